# backend/core/unit_of_work.py

"""
Explicit transaction boundary for the rental core.

A ``UnitOfWork`` owns one SQLAlchemy session. Services receive it in their
constructor and perform every multi-entity write through it, so a single
``commit()`` or ``rollback()`` decides the fate of the whole operation.

Side effects that are not part of the consistency contract (notifications,
emails, releasing stored assets) are registered with ``after_commit`` and run
by a ``HookDispatcher`` once the commit has succeeded. Each hook is isolated:
a failing hook is logged and the remaining hooks still run.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


@dataclass
class Hook:
    fn: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None

    @property
    def name(self) -> str:
        return self.description or getattr(self.fn, "__qualname__", repr(self.fn))

    def __call__(self):
        return self.fn(*self.args, **self.kwargs)


class HookDispatcher:
    """Runs hooks best-effort, logging and swallowing each failure."""

    def dispatch(self, hooks: List[Hook]) -> int:
        failures = 0
        for hook in hooks:
            try:
                hook()
            except Exception:
                failures += 1
                logger.exception(f"Post-transaction hook '{hook.name}' failed")
        if failures:
            logger.warning(f"{failures} of {len(hooks)} hooks failed")
        return failures


class UnitOfWork:
    """One atomic boundary: a session plus the hooks tied to its outcome."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        dispatcher: Optional[HookDispatcher] = None,
    ):
        if session_factory is None:
            from .database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.dispatcher = dispatcher or HookDispatcher()
        self.session: Session = session_factory()
        self._after_commit: List[Hook] = []
        self._on_rollback: List[Hook] = []

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.rollback()
        self.close()
        return False

    def spawn(self) -> "UnitOfWork":
        """A fresh, independent unit of work sharing this one's wiring."""
        return UnitOfWork(self.session_factory, self.dispatcher)

    def after_commit(self, fn: Callable[..., Any], *args, description: Optional[str] = None, **kwargs):
        self._after_commit.append(Hook(fn, args, kwargs, description))

    def on_rollback(self, fn: Callable[..., Any], *args, description: Optional[str] = None, **kwargs):
        self._on_rollback.append(Hook(fn, args, kwargs, description))

    def flush(self):
        self.session.flush()

    def commit(self):
        self.session.commit()
        hooks, self._after_commit = self._after_commit, []
        self._on_rollback = []
        if hooks:
            self.dispatcher.dispatch(hooks)

    def rollback(self):
        self.session.rollback()
        hooks, self._on_rollback = self._on_rollback, []
        self._after_commit = []
        if hooks:
            self.dispatcher.dispatch(hooks)

    def close(self):
        self.session.close()
