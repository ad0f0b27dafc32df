# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys
sys.path.insert(0, os.path.abspath('..'))  # project root, so `import dbstage` works


project = 'dbstage'
release = '0.1.0'

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',      # Auto-generate docs from docstrings
    'sphinx.ext.napoleon',     # Support Google/NumPy style docstrings
    'sphinx.ext.viewcode',     # Add [source] links to code
    'sphinx.ext.intersphinx',  # Link to Python and polars docs
]

templates_path = ['_templates']
exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

autodoc_default_options = {
    'members': True,
    'undoc-members': False,
    'private-members': False,
    'special-members': '__init__',
    'inherited-members': False,
    'show-inheritance': True,
    'exclude-members': '__weakref__'
}

autodoc_inherit_docstrings = False

# Move type hints to parameter descriptions instead of signature
autodoc_typehints = "description"
autodoc_typehints_description_target = "documented"
python_use_unqualified_type_names = True

# Drivers are optional; docs build without them
autodoc_mock_imports = ['pyodbc', 'psycopg2', 'psycopg', 'pymssql', 'keyring']

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'polars': ('https://docs.pola.rs/api/python/stable', None),
}

# -- Options for HTML output -------------------------------------------------

html_theme = 'sphinx_rtd_theme'
html_static_path = []
