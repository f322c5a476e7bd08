import anyio
import asyncio
import logging
from uuid import UUID
from typing import Any, Awaitable, Callable, Iterator, Mapping
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from domain.gateways import GatewayKind
from domain.events import WebhookEvent, ReconciliationResult
from domain.statuses import PaymentStatus, OPEN_STATUSES
from domain.errors import ReconciliationError, GatewayUnreachable, PaymentDoesntExistError
from services.audit import AuditLog, outcome_for_result
from services.cointopay import StatusClient
from services.reconciliation import Reconciler
from settings import polling_settings


logger = logging.getLogger('paygate-polling')


@dataclass(frozen=True)
class BackoffSchedule:
    intervals: tuple[float, ...] = tuple(polling_settings.backoff_intervals)
    repeat_interval: float = polling_settings.repeat_interval
    horizon: timedelta = timedelta(days=polling_settings.expiry_horizon_days)

    def interval(self, index: int) -> float:
        return self.intervals[index] if index < len(self.intervals) else self.repeat_interval

    def fire_times(self, started_at: datetime) -> Iterator[datetime]:
        """Poll times strictly before the horizon. Intervals are cumulative."""
        expires_at = started_at + self.horizon
        at = started_at
        index = 0
        while True:
            at = at + timedelta(seconds=self.interval(index))
            if at >= expires_at:
                return
            yield at
            index += 1


@dataclass
class PollTimer:
    payment_id: UUID
    gateway: GatewayKind
    gateway_payment_id: str | None
    started_at: datetime
    expires_at: datetime
    next_check: datetime
    next_index: int = 1
    checks: int = 0
    last_check: datetime | None = None
    cancelled: bool = False
    task: asyncio.Task | None = None


class TimerInfo(BaseModel):
    payment_id: UUID
    gateway: str
    gateway_payment_id: str | None
    started_at: datetime
    expires_at: datetime
    last_check: datetime | None
    next_check: datetime
    checks: int
    remaining_intervals: list[float]


class PollingStats(BaseModel):
    active_timers: int
    expiry_horizon_days: float
    backoff_intervals: list[float]
    repeat_interval: float
    polled_gateways: list[str]
    timers: list[TimerInfo]


@dataclass(frozen=True)
class PollingScheduler:
    """Owns one timer task per polled payment; every firing goes through the reconciler."""
    session_maker: async_sessionmaker[AsyncSession]
    reconciler: Reconciler
    status_clients: Mapping[GatewayKind, StatusClient]
    audit: AuditLog | None = None
    backoff: BackoffSchedule = field(default_factory=BackoffSchedule)
    query_timeout: float = polling_settings.status_query_timeout
    clock: Callable[[], datetime] = datetime.now
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    _timers: dict[UUID, PollTimer] = field(default_factory=dict)

    def __post_init__(self):
        self.reconciler.on_terminal.append(self.cancel)

    def is_polled(self, gateway: GatewayKind | str) -> bool:
        return gateway in self.status_clients

    def schedule(
        self,
        payment_id: UUID,
        gateway: GatewayKind,
        gateway_payment_id: str | None,
        started_at: datetime | None = None
    ) -> PollTimer | None:
        if not self.is_polled(gateway):
            return None

        self.cancel(payment_id)

        started_at = started_at or self.clock()
        timer = PollTimer(
            payment_id=payment_id,
            gateway=gateway,
            gateway_payment_id=gateway_payment_id,
            started_at=started_at,
            expires_at=started_at + self.backoff.horizon,
            next_check=started_at + timedelta(seconds=self.backoff.interval(0))
        )

        # Firings already in the past are skipped
        now = self.clock()
        while timer.next_check <= now and timer.next_check < timer.expires_at:
            self._advance(timer)

        self._timers[payment_id] = timer
        timer.task = asyncio.create_task(self._run(timer))
        logger.info(
            f'scheduled {gateway} checks for payment {payment_id}, '
            f'first at {timer.next_check.isoformat()}, expires at {timer.expires_at.isoformat()}'
        )
        return timer

    def cancel(self, payment_id: UUID) -> bool:
        timer = self._timers.pop(payment_id, None)
        if timer is None:
            return False

        timer.cancelled = True
        # A timer may cancel itself through the reconciler, its loop exits on the flag
        if timer.task is not None and timer.task is not asyncio.current_task():
            timer.task.cancel()

        logger.info(f'cancelled checks for payment {payment_id} after {timer.checks} checks')
        return True

    async def stop(self):
        timers = list(self._timers.values())
        for timer in timers:
            self.cancel(timer.payment_id)

        tasks = [timer.task for timer in timers if timer.task is not None]
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f'stopped {len(timers)} payment timers')

    async def resume_pending(self) -> int:
        """Re-creates timers for open payments of polled gateways, anchored at their creation time."""
        async with self.session_maker() as session:
            payments = (await session.execute(
                select(tables.Payment)
                .where(
                    tables.Payment.gateway.in_([str(gateway) for gateway in self.status_clients]),
                    tables.Payment.status.in_(list(OPEN_STATUSES))
                )
            )).scalars().all()

        for payment in payments:
            self.schedule(
                payment_id=payment.id,
                gateway=GatewayKind(payment.gateway),
                gateway_payment_id=payment.gateway_payment_id,
                started_at=payment.created_at
            )

        logger.info(f'resumed checks for {len(payments)} open payments')
        return len(payments)

    def _advance(self, timer: PollTimer):
        timer.next_check = timer.next_check + timedelta(seconds=self.backoff.interval(timer.next_index))
        timer.next_index += 1

    async def _sleep_until(self, at: datetime):
        delay = (at - self.clock()).total_seconds()
        if delay > 0:
            await self.sleep(delay)

    async def _run(self, timer: PollTimer):
        try:
            while not timer.cancelled:
                if timer.next_check >= timer.expires_at:
                    await self._sleep_until(timer.expires_at)
                    if not timer.cancelled:
                        await self._expire(timer)
                    return

                await self._sleep_until(timer.next_check)
                if timer.cancelled:
                    return

                await self._fire(timer)
                self._advance(timer)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f'timer of payment {timer.payment_id} crashed')
        finally:
            if self._timers.get(timer.payment_id) is timer:
                del self._timers[timer.payment_id]

    async def _fire(self, timer: PollTimer):
        timer.checks += 1
        timer.last_check = self.clock()

        async with self.session_maker() as session:
            payment = await session.get(tables.Payment, timer.payment_id)

        if payment is None or payment.status not in OPEN_STATUSES:
            logger.info(f'payment {timer.payment_id} is no longer open, stopping checks')
            self.cancel(timer.payment_id)
            return

        if payment.gateway_payment_id is None:
            logger.info(f'payment {payment.id} has no gateway payment id yet, skipping check #{timer.checks}')
            return

        timer.gateway_payment_id = payment.gateway_payment_id
        try:
            await self._check(payment)
        except ReconciliationError as e:
            # Backoff continues unchanged
            logger.warning(f'check #{timer.checks} of payment {payment.id} failed: {e!r}')

    async def _check(self, payment: tables.Payment) -> ReconciliationResult:
        gateway = GatewayKind(payment.gateway)
        client = self.status_clients.get(gateway)
        if client is None:
            raise GatewayUnreachable(f'{gateway} has no status query')
        assert payment.gateway_payment_id is not None

        try:
            try:
                with anyio.fail_after(self.query_timeout):
                    event = await client.query_status(payment.gateway_payment_id)
            except TimeoutError as e:
                raise GatewayUnreachable(f'{gateway} status query timed out after {self.query_timeout}s') from e

            result = await self.reconciler.reconcile(event, payment_id=payment.id)
        except ReconciliationError as e:
            if self.audit is not None:
                await self.audit.record_error(str(gateway), 'poll', payment.gateway_payment_id, e)
            raise

        if self.audit is not None:
            await self.audit.record(
                gateway=str(gateway),
                source='poll',
                event=event.reported_status,
                outcome=outcome_for_result(result),
                payment_id=payment.id,
                payload=event.raw_payload
            )
        return result

    async def _expire(self, timer: PollTimer):
        event = WebhookEvent(
            gateway=timer.gateway,
            gateway_payment_id=timer.gateway_payment_id,
            reported_status='expired',
            status=PaymentStatus.EXPIRED,
            received_at=self.clock(),
            source='expiry'
        )

        try:
            result = await self.reconciler.reconcile(event, payment_id=timer.payment_id)
        except ReconciliationError as e:
            logger.error(f'couldn\'t expire payment {timer.payment_id}: {e!r}')
            return

        # Expiry is inferred from silence, not confirmed by the gateway
        if result.applied:
            logger.warning(
                f'payment {timer.payment_id} expired after {self.backoff.horizon} '
                f'and {timer.checks} checks without settlement'
            )
        if self.audit is not None:
            await self.audit.record(
                gateway=str(timer.gateway),
                source='expiry',
                event='expired',
                outcome=outcome_for_result(result),
                payment_id=timer.payment_id
            )

    async def check_now(self, payment_id: UUID) -> ReconciliationResult:
        async with self.session_maker() as session:
            payment = await session.get(tables.Payment, payment_id)
        if payment is None:
            raise PaymentDoesntExistError()
        if payment.gateway_payment_id is None:
            raise GatewayUnreachable(f'payment {payment_id} has no gateway payment id yet')

        timer = self._timers.get(payment_id)
        if timer is not None:
            timer.checks += 1
            timer.last_check = self.clock()

        logger.info(f'manual check of payment {payment_id}')
        return await self._check(payment)

    def _info(self, timer: PollTimer) -> TimerInfo:
        index = timer.next_index
        return TimerInfo(
            payment_id=timer.payment_id,
            gateway=str(timer.gateway),
            gateway_payment_id=timer.gateway_payment_id,
            started_at=timer.started_at,
            expires_at=timer.expires_at,
            last_check=timer.last_check,
            next_check=min(timer.next_check, timer.expires_at),
            checks=timer.checks,
            remaining_intervals=list(self.backoff.intervals[index:])
        )

    def timer_info(self, payment_id: UUID) -> TimerInfo | None:
        timer = self._timers.get(payment_id)
        return self._info(timer) if timer is not None else None

    def stats(self) -> PollingStats:
        return PollingStats(
            active_timers=len(self._timers),
            expiry_horizon_days=self.backoff.horizon / timedelta(days=1),
            backoff_intervals=list(self.backoff.intervals),
            repeat_interval=self.backoff.repeat_interval,
            polled_gateways=[str(gateway) for gateway in self.status_clients],
            timers=[self._info(timer) for timer in self._timers.values()]
        )
