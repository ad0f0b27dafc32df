"""
Bulk inserts 50,000 todo items, reads back their generated ids, then marks
every other one complete with a bulk update.

Expects a `todo_db` connection in dbstage.yml and this table:

CREATE TABLE TodoItems (
  Id          int IDENTITY(1,1) PRIMARY KEY,
  Name        nvarchar(200) NOT NULL,
  IsComplete  bit NOT NULL
);
"""
import dataclasses
from typing import Optional

import dbstage
from dbstage.etl import EntityMap, StagedSurge

@dataclasses.dataclass
class TodoItem:
    name: str
    complete: bool = False
    id: Optional[int] = None


todo_map = EntityMap('TodoItems', {
    'Id': {'attr': 'id', 'type': int, 'primary_key': True, 'identity': True},
    'Name': {'attr': 'name', 'type': str, 'db_type': 'nvarchar(200)'},
    'IsComplete': {'attr': 'complete', 'type': bool},
}, entity_type=TodoItem)


if __name__ == '__main__':
    dbstage.setup_logging('todo_items')
    db = dbstage.connect('todo_db')

    todos = [TodoItem(name=f'Chore {i:05}') for i in range(50_000)]
    with StagedSurge(db, todo_map, batch_size=5_000, use_transaction=True) as surge:
        inserted = surge.insert(todos)
        print(f"Inserted {inserted.rows_affected:,} rows in {inserted.batches} batches, "
              f"ids {todos[0].id}..{todos[-1].id}")

        for todo in todos[::2]:
            todo.complete = True
        updated = surge.update(todos[::2], columns=['complete'])
        print(f"Updated {updated.rows_affected:,} rows, {updated.not_matched} not matched")

    db.close()
    error_log = dbstage.errors_logged()
    if error_log:
        print(f"Errors logged, see {error_log}")
