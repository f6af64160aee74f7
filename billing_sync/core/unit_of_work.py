"""Explicit transactional boundary for multi-entity billing updates.

A webhook handler typically touches the idempotency ledger, a subscription,
an invoice, the organization and the audit log. Those writes share one
session and commit together, or not at all. Side effects that must not run
for a rolled-back change (notifications) are queued with ``after_commit``
and only executed once the commit has succeeded.
"""

import logging
from collections.abc import Awaitable, Callable
from types import TracebackType

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

AfterCommitHook = Callable[[], Awaitable[object]]


class UnitOfWork:
    """Async context manager owning one session and its transaction.

    Usage::

        async with UnitOfWork(session_maker) as uow:
            await subscription_ops.set_status(uow.session, sub, "active")
            uow.after_commit(lambda: notifier.notify(org_id, kind, message))
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._session: AsyncSession | None = None
        self._hooks: list[AfterCommitHook] = []
        self.committed = False

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("UnitOfWork used outside of its context")
        return self._session

    def after_commit(self, hook: AfterCommitHook) -> None:
        """Queue a coroutine factory to run after a successful commit."""
        self._hooks.append(hook)

    async def __aenter__(self) -> "UnitOfWork":
        self._session = self._session_maker()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        session = self.session
        try:
            if exc_type is None:
                await session.commit()
                self.committed = True
            else:
                await session.rollback()
        finally:
            # close() discards any transaction a failed commit left open
            await session.close()
            self._session = None

        if self.committed:
            await self._run_hooks()

    async def _run_hooks(self) -> None:
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            try:
                await hook()
            except Exception:
                # Hooks are side effects of an already committed change
                logger.exception("[uow] after-commit hook failed")
