from .protocol import TaskStore
from .sqlalchemy import SqlAlchemyTaskStore, InMemoryTaskStore, TaskModel

__all__ = ["TaskStore", "SqlAlchemyTaskStore", "InMemoryTaskStore", "TaskModel"]
