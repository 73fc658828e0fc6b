"""Window Scheduler.

Betting windows gate every new wager and purchase. A window moves through

    closed (scheduled) -> open -> locked -> closed (settled or expired)

and any other transition is refused. Locking never touches escrowed funds;
pending wagers wait for the round that settles the window. A locked window
that no round claims within ``expiry_days`` is expired and everything it
holds is refunded.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.config import get_economy_config
from pulp.models.base import as_utc, atomic, utc_now
from pulp.models.domain import BettingWindow, Challenge, Prediction
from pulp.services.errors import InvalidState, NotFound, WindowAlreadyOpen, WindowClosed

logger = structlog.get_logger(__name__)


class WindowStatus:
    CLOSED = "closed"
    OPEN = "open"
    LOCKED = "locked"


class CloseReason:
    SETTLED = "settled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS = {
    WindowStatus.CLOSED: {WindowStatus.OPEN},
    WindowStatus.OPEN: {WindowStatus.LOCKED},
    WindowStatus.LOCKED: {WindowStatus.CLOSED},
}


@dataclass
class ActiveWindow:
    """The window players currently see, with its countdown."""
    window: BettingWindow
    seconds_remaining: int
    accepting: bool


@dataclass
class LockResult:
    """Outcome of locking betting on a window."""
    window: BettingWindow
    predictions_locked: int
    challenges_locked: int

    @property
    def bets_locked(self) -> int:
        return self.predictions_locked + self.challenges_locked


def is_accepting(window: BettingWindow, now: datetime | None = None) -> bool:
    """True while the window takes new wagers: open and not past closes_at."""
    now = now or utc_now()
    return window.status == WindowStatus.OPEN and as_utc(window.closes_at) > now


def seconds_remaining(window: BettingWindow, now: datetime | None = None) -> int:
    now = now or utc_now()
    if window.status != WindowStatus.OPEN:
        return 0
    return max(0, int((as_utc(window.closes_at) - now).total_seconds()))


async def require_open_window(
    db: AsyncSession, window_id: int, now: datetime | None = None
) -> BettingWindow:
    """
    Load a window and check it accepts new entries.

    Raises:
        NotFound: unknown window id
        WindowClosed: the window is not open, or its countdown ran out
    """
    window = await db.get(BettingWindow, window_id)
    if window is None:
        raise NotFound(f"Betting window {window_id} not found")
    if not is_accepting(window, now):
        raise WindowClosed("The PULPy window is closed")
    return window


class WindowScheduler:
    """Drives betting windows through their lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.config = get_economy_config().windows

    async def get_window(self, window_id: int, lock: bool = False) -> BettingWindow:
        query = select(BettingWindow).where(BettingWindow.id == window_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        window = (await self.db.execute(query)).scalar_one_or_none()
        if window is None:
            raise NotFound(f"Betting window {window_id} not found")
        return window

    def _transition(self, window: BettingWindow, target: str) -> None:
        if target not in ALLOWED_TRANSITIONS.get(window.status, set()):
            raise InvalidState(
                f"Window {window.id} cannot go from {window.status} to {target}"
            )
        if target == WindowStatus.OPEN and window.closed_at is not None:
            raise InvalidState(f"Window {window.id} has already been closed")
        logger.info(
            "window_transition",
            window_id=window.id,
            from_status=window.status,
            to_status=target,
        )
        window.status = target

    async def schedule_window(
        self,
        opens_at: datetime,
        closes_at: datetime,
        opened_by: int | None = None,
    ) -> BettingWindow:
        """Create a window that opens automatically at opens_at."""
        opens_at, closes_at = as_utc(opens_at), as_utc(closes_at)
        if closes_at <= opens_at:
            raise InvalidState("A window must close after it opens")

        window = BettingWindow(
            status=WindowStatus.CLOSED,
            opened_by=opened_by,
            opens_at=opens_at,
            closes_at=closes_at,
        )
        self.db.add(window)
        await self.db.flush()
        logger.info("window_scheduled", window_id=window.id, opens_at=opens_at.isoformat())
        return window

    async def _find_open_window(self, now: datetime) -> BettingWindow | None:
        result = await self.db.execute(
            select(BettingWindow)
            .where(
                BettingWindow.status == WindowStatus.OPEN,
                BettingWindow.closes_at > now,
            )
            .order_by(BettingWindow.opens_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def open_window(
        self,
        opened_by: int | None = None,
        duration_minutes: int | None = None,
        now: datetime | None = None,
    ) -> BettingWindow:
        """
        Open a new window right away.

        Only one window may be open at a time. Open windows whose countdown
        already ran out are locked first.
        """
        now = now or utc_now()
        await self.lock_expired_windows(now)

        current = await self._find_open_window(now)
        if current is not None:
            raise WindowAlreadyOpen(
                f"A PULPy window is already open ({seconds_remaining(current, now)}s remaining)"
            )

        duration = duration_minutes or self.config.duration_minutes
        window = BettingWindow(
            status=WindowStatus.CLOSED,
            opened_by=opened_by,
            opens_at=now,
            closes_at=now + timedelta(minutes=duration),
        )
        self.db.add(window)
        await self.db.flush()
        self._transition(window, WindowStatus.OPEN)
        await self.db.flush()

        logger.info(
            "window_opened",
            window_id=window.id,
            opened_by=opened_by,
            duration_minutes=duration,
        )
        return window

    async def open_due_windows(self, now: datetime | None = None) -> dict[str, Any]:
        """Open scheduled windows whose start time has passed."""
        now = now or utc_now()
        stats = {"windows_due": 0, "opened": 0, "skipped": 0}

        result = await self.db.execute(
            select(BettingWindow)
            .where(
                BettingWindow.status == WindowStatus.CLOSED,
                BettingWindow.closed_at.is_(None),
                BettingWindow.opens_at <= now,
            )
            .order_by(BettingWindow.opens_at)
        )
        due = list(result.scalars())
        stats["windows_due"] = len(due)

        for window in due:
            if as_utc(window.closes_at) <= now:
                # Its whole window passed unopened
                window.closed_at = now
                window.close_reason = CloseReason.CANCELLED
                stats["skipped"] += 1
                continue
            if await self._find_open_window(now) is not None:
                stats["skipped"] += 1
                continue
            self._transition(window, WindowStatus.OPEN)
            await self.db.flush()
            stats["opened"] += 1

        await self.db.flush()
        logger.info("open_due_windows_complete", **stats)
        return stats

    async def lock_window(self, window_id: int, now: datetime | None = None) -> LockResult:
        """
        Stop accepting wagers on a window (lock-betting).

        Escrowed funds stay where they are; the window now waits for a
        round to settle it or for expires_at to pass.
        """
        now = now or utc_now()
        window = await self.get_window(window_id, lock=True)
        self._transition(window, WindowStatus.LOCKED)
        window.locked_at = now
        window.expires_at = now + timedelta(days=self.config.expiry_days)

        predictions = await self.db.scalar(
            select(func.count(Prediction.id)).where(
                Prediction.window_id == window.id, Prediction.status == "pending"
            )
        )
        challenges = await self.db.scalar(
            select(func.count(Challenge.id)).where(
                Challenge.window_id == window.id,
                Challenge.status.in_(("pending", "accepted")),
            )
        )
        await self.db.flush()

        logger.info(
            "window_locked",
            window_id=window.id,
            predictions=predictions,
            challenges=challenges,
            expires_at=window.expires_at.isoformat(),
        )
        return LockResult(
            window=window,
            predictions_locked=predictions or 0,
            challenges_locked=challenges or 0,
        )

    async def lock_expired_windows(self, now: datetime | None = None) -> int:
        """Lock open windows whose countdown has run out."""
        now = now or utc_now()
        result = await self.db.execute(
            select(BettingWindow.id).where(
                BettingWindow.status == WindowStatus.OPEN,
                BettingWindow.closes_at <= now,
            )
        )
        window_ids = list(result.scalars())
        for window_id in window_ids:
            await self.lock_window(window_id, now)
        return len(window_ids)

    async def close_window(
        self,
        window_id: int,
        reason: str,
        round_id: int | None = None,
        now: datetime | None = None,
    ) -> BettingWindow:
        window = await self.get_window(window_id, lock=True)
        self._transition(window, WindowStatus.CLOSED)
        window.closed_at = now or utc_now()
        window.close_reason = reason
        if round_id is not None:
            window.round_id = round_id
        await self.db.flush()
        logger.info("window_closed", window_id=window.id, reason=reason, round_id=round_id)
        return window

    async def get_active_window(self, now: datetime | None = None) -> ActiveWindow | None:
        """The most recent open or locked window, if any."""
        now = now or utc_now()
        result = await self.db.execute(
            select(BettingWindow)
            .where(BettingWindow.status.in_((WindowStatus.OPEN, WindowStatus.LOCKED)))
            .order_by(BettingWindow.opens_at.desc(), BettingWindow.id.desc())
            .limit(1)
        )
        window = result.scalar_one_or_none()
        if window is None:
            return None
        return ActiveWindow(
            window=window,
            seconds_remaining=seconds_remaining(window, now),
            accepting=is_accepting(window, now),
        )

    async def expire_stale_windows(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Refund and close locked windows that no round settled in time.

        Each window is its own transaction; a failure is logged and the
        remaining windows are still processed.
        """
        from pulp.services.challenges import ChallengeEngine
        from pulp.services.predictions import PredictionMarket

        now = now or utc_now()
        stats = {
            "windows_checked": 0,
            "windows_expired": 0,
            "predictions_refunded": 0,
            "challenges_refunded": 0,
            "errors": 0,
        }

        result = await self.db.execute(
            select(BettingWindow.id).where(
                BettingWindow.status == WindowStatus.LOCKED,
                BettingWindow.round_id.is_(None),
                BettingWindow.expires_at <= now,
            )
        )
        window_ids = list(result.scalars())
        stats["windows_checked"] = len(window_ids)

        for window_id in window_ids:
            try:
                async with atomic(self.db):
                    predictions = await PredictionMarket(self.db).refund_window(window_id)
                    challenges = await ChallengeEngine(self.db).refund_window(window_id)
                    await self.close_window(window_id, CloseReason.EXPIRED, now=now)
                stats["windows_expired"] += 1
                stats["predictions_refunded"] += predictions
                stats["challenges_refunded"] += challenges
            except Exception as e:
                logger.error("window_expiry_error", window_id=window_id, error=str(e))
                stats["errors"] += 1

        logger.info("expire_stale_windows_complete", **stats)
        return stats
