"""List-level rules applied before anything reaches the task store.

List names are canonicalised with ``normalize_list_name`` on every entry
point, the default list can never be deleted, and every operation is scoped
to the owner resolved from the caller's auth context.
"""
from typing import Optional
import logging

from pydantic import BaseModel

from .auth import AuthContext
from .config import Settings
from .errors import ProtectedListError, Unauthenticated, ValidationError
from .models import Task
from .store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_LIST_NAME = "Personal"


def normalize_list_name(raw: Optional[str], default: str = DEFAULT_LIST_NAME) -> str:
    """Capitalize the first letter and lower-case the rest ("wOrK" -> "Work").

    Empty or missing input falls back to the default list name. A "/" is
    refused because the list name is a single URL path segment.
    """
    name = (raw or '').strip()
    if not name:
        return default
    if '/' in name:
        raise ValidationError(f'list name {name!r} must not contain "/"')
    return name[0].upper() + name[1:].lower()


def decode_checkbox(raw: Optional[str]) -> bool:
    """HTML checkbox convention: only the literal "on" is true.

    Browsers omit unchecked boxes entirely, so absent means false.
    """
    return raw == 'on'


class TaskView(BaseModel):
    id: int
    text: str
    done: bool


class ListView(BaseModel):
    list_name: str
    tasks: list[TaskView]
    # default list first, then the owner's other lists
    lists: list[str] = []


class ListPolicy:
    def __init__(self, store: TaskStore, settings: Settings):
        self.store = store
        self.settings = settings

    @property
    def default_list_name(self) -> str:
        return normalize_list_name(self.settings.default_list_name)

    def normalize_list_name(self, raw: Optional[str]) -> str:
        return normalize_list_name(raw, self.default_list_name)

    def resolve_owner(self, auth_context: AuthContext) -> Optional[str]:
        if auth_context.is_authenticated():
            return auth_context.current_user_id()
        if self.settings.require_login:
            raise Unauthenticated('login required')
        return None

    async def add_item(self, list_name: Optional[str], text: str, auth_context: AuthContext) -> Task:
        name = self.normalize_list_name(list_name)
        owner = self.resolve_owner(auth_context)
        return await self.store.create_task(name, text, owner)

    def _guard_deletable(self, name: str) -> None:
        if name == self.default_list_name:
            raise ProtectedListError(f'the {name!r} list cannot be deleted')

    async def delete_list(self, list_name: Optional[str], auth_context: AuthContext) -> int:
        name = self.normalize_list_name(list_name)
        try:
            self._guard_deletable(name)
        except ProtectedListError as e:
            logger.warning('refused list delete: %s', e)
            return 0
        owner = self.resolve_owner(auth_context)
        count = await self.store.delete_list(name, owner)
        logger.info('deleted list %r owner=%s (%d tasks)', name, owner, count)
        return count

    async def prune_list(self, list_name: Optional[str], auth_context: AuthContext) -> int:
        name = self.normalize_list_name(list_name)
        owner = self.resolve_owner(auth_context)
        count = await self.store.prune_completed(name, owner)
        logger.info('pruned %d completed tasks from %r owner=%s', count, name, owner)
        return count

    async def toggle_done(self, task_id: int, done: bool, auth_context: AuthContext) -> Task:
        owner = self.resolve_owner(auth_context)
        return await self.store.set_done(task_id, done, owner)

    async def get_view(self, list_name: Optional[str], auth_context: AuthContext) -> ListView:
        name = self.normalize_list_name(list_name)
        owner = self.resolve_owner(auth_context)
        tasks = await self.store.list_tasks(name, owner)
        names = [n for n in await self.store.list_names(owner) if n != self.default_list_name]
        return ListView(
            list_name=name,
            tasks=[TaskView(id=t.id, text=t.text, done=t.done) for t in tasks],
            lists=[self.default_list_name] + names,
        )
