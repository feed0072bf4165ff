"""Appointment persistence with optimistic concurrency.

``AppointmentStore`` is the only code that writes the ``appointments`` table.
Status writes are conditional on the version read by the caller, so two actors
racing on the same appointment can never overwrite each other silently.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import Conflict, InvalidTransition, NotFound
from src.modules.appointments.models import Appointment, AppointmentStatusEvent
from src.shared.enums import AppointmentStatus
from src.shared.models import utcnow
from src.shared.schemas import Actor

logger = structlog.get_logger(__name__)

Mutation = Callable[[Appointment], Awaitable[AppointmentStatus]]


class AppointmentStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def load(self, appointment_id: str) -> tuple[Appointment, int]:
        """Return the appointment and the version token it was read at."""
        stmt = (
            select(Appointment)
            .where(Appointment.appointment_id == appointment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        appointment = result.scalar_one_or_none()
        if appointment is None:
            raise NotFound("Appointment not found")
        return appointment, appointment.version

    async def current_version(self, appointment_id: str) -> int | None:
        result = await self.db.execute(
            select(Appointment.version).where(Appointment.appointment_id == appointment_id)
        )
        return result.scalar_one_or_none()

    async def create(self, appointment: Appointment, actor: Actor) -> Appointment:
        appointment.version = 1
        self.db.add(appointment)
        await self.db.flush()
        self.db.add(
            AppointmentStatusEvent(
                appointment_id=appointment.appointment_id,
                from_status=None,
                to_status=appointment.status,
                actor_role=actor.role,
                actor_id=actor.user_id,
                version=1,
            )
        )
        await self.db.commit()
        await self.db.refresh(appointment)
        return appointment

    async def save(
        self,
        appointment_id: str,
        version: int,
        from_status: AppointmentStatus,
        new_status: AppointmentStatus,
        actor: Actor,
        changes: dict[str, Any] | None = None,
    ) -> int:
        """Write ``new_status`` if the row is still at ``version``; return the new version."""
        new_version = version + 1
        stmt = (
            update(Appointment)
            .where(
                Appointment.appointment_id == appointment_id,
                Appointment.version == version,
            )
            .values(status=new_status, version=new_version, updated_at=utcnow(), **(changes or {}))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            await self.db.rollback()
            current = await self.current_version(appointment_id)
            if current is None:
                raise NotFound("Appointment not found")
            logger.info(
                "appointment_version_conflict",
                appointment_id=appointment_id,
                expected_version=version,
                current_version=current,
            )
            raise Conflict(appointment_id, expected_version=version, current_version=current)

        self.db.add(
            AppointmentStatusEvent(
                appointment_id=appointment_id,
                from_status=from_status,
                to_status=new_status,
                actor_role=actor.role,
                actor_id=actor.user_id,
                version=new_version,
            )
        )
        await self.db.commit()
        logger.info(
            "appointment_status_written",
            appointment_id=appointment_id,
            from_status=from_status.value,
            to_status=new_status.value,
            version=new_version,
            actor_role=actor.role.value,
        )
        return new_version


_LOCKS: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def appointment_lock(appointment_id: str) -> asyncio.Lock:
    """Process-local lock shared by every writer that reads an appointment before acting on it."""
    lock = _LOCKS.get(appointment_id)
    if lock is None:
        lock = asyncio.Lock()
        _LOCKS[appointment_id] = lock
    return lock


class ConcurrencyGuard:
    """Read-validate-write under an advisory lock and a version check.

    The per-appointment ``asyncio.Lock`` only serialises writers inside this
    process; the conditional UPDATE in ``AppointmentStore.save`` is what holds
    across processes.
    """

    def __init__(self, store: AppointmentStore):
        self.store = store

    async def with_lock(
        self,
        appointment_id: str,
        expected_version: int,
        mutation: Mutation,
        actor: Actor,
        changes: dict[str, Any] | None = None,
    ) -> int:
        async with appointment_lock(appointment_id):
            appointment, version = await self.store.load(appointment_id)
            if version != expected_version:
                raise Conflict(appointment_id, expected_version=expected_version, current_version=version)

            current = appointment.status
            target = await mutation(appointment)
            # Terminal records are absorbing, even for a repeat of the same status.
            if current.is_terminal:
                raise InvalidTransition(current.value, target.value, actor.role.value)
            if target == current and not changes:
                return version
            return await self.store.save(appointment_id, version, current, target, actor, changes)
