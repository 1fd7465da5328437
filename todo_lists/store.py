from typing import Optional
import logging

from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete

from .db import Database
from .errors import NotFoundError, ValidationError
from .models import Task

logger = logging.getLogger(__name__)


class TaskStore:
    """Persistence and queries over task rows.

    Every operation opens its own session; the database is the only shared
    state. Multi-row deletes select the matching ids first and then delete
    them, so a task inserted concurrently may or may not be included.
    """

    def __init__(self, db: Database):
        self.db = db

    async def create_task(self, list_name: str, text: str, owner_id: Optional[str]) -> Task:
        text = (text or '').strip()
        if not text:
            raise ValidationError('task text must not be empty')
        task = Task(list_name=list_name, text=text, done=False, owner_id=owner_id)
        async with self.db.session() as sess:
            sess.add(task)
            await sess.commit()
            await sess.refresh(task)
        logger.info('created task %s in list %r owner=%s', task.id, list_name, owner_id)
        return task

    async def list_tasks(self, list_name: str, owner_id: Optional[str]) -> list[Task]:
        # pending first, then alphabetical within each group
        q = (
            select(Task)
            .where(Task.list_name == list_name)
            .where(Task.owner_id == owner_id)
            .order_by(Task.done.asc(), Task.text.asc())
        )
        async with self.db.session() as sess:
            res = await sess.exec(q)
            return list(res.all())

    async def set_done(self, task_id: int, done: bool, owner_id: Optional[str]) -> Task:
        """Set the completion flag of one task. Idempotent.

        A task owned by someone else is reported as missing so callers cannot
        discover other owners' ids.
        """
        async with self.db.session() as sess:
            task = await sess.get(Task, task_id)
            if task is None or task.owner_id != owner_id:
                raise NotFoundError(f'task {task_id} not found')
            if task.done != done:
                task.done = done
                sess.add(task)
                await sess.commit()
                await sess.refresh(task)
        return task

    async def _delete_matching(self, *conditions) -> int:
        async with self.db.session() as sess:
            res = await sess.exec(select(Task.id).where(*conditions))
            ids = list(res.all())
            if not ids:
                return 0
            await sess.exec(sqlalchemy_delete(Task).where(Task.id.in_(ids)))
            await sess.commit()
        return len(ids)

    async def delete_list(self, list_name: str, owner_id: Optional[str]) -> int:
        return await self._delete_matching(Task.list_name == list_name, Task.owner_id == owner_id)

    async def prune_completed(self, list_name: str, owner_id: Optional[str]) -> int:
        return await self._delete_matching(
            Task.list_name == list_name,
            Task.owner_id == owner_id,
            Task.done == True,  # noqa: E712
        )

    async def list_names(self, owner_id: Optional[str]) -> list[str]:
        q = select(Task.list_name).where(Task.owner_id == owner_id).distinct().order_by(Task.list_name)
        async with self.db.session() as sess:
            res = await sess.exec(q)
            return list(res.all())
