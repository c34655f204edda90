"""Registry of room controllers and the operations exposed to chat."""
from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .catalog import CrimeCatalog
from .config import Settings, get_settings
from .controller import RoomHeistController
from .economy import EconomyLedger, SqliteEconomyLedger
from .errors import PermissionDeniedError
from .models import HeistStatus, PayoutReport, TrustRecord
from .rng import DeterministicRNG
from .scheduler import create_scheduler
from .state import HeistState
from .telemetry import get_telemetry
from .transport import ChatTransport, LoggingTransport
from .trust import TrustLedger
from .votes import normalize_username

logger = logging.getLogger(__name__)


class HeistService:
    """Coordinates one controller per room over shared state and ledgers."""

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        *,
        catalog: CrimeCatalog | None = None,
        economy: EconomyLedger | None = None,
        transport: ChatTransport | None = None,
        scheduler=None,
        rng_factory: Optional[Callable[[str], DeterministicRNG]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.state = HeistState(db_path)
        self.catalog = catalog or CrimeCatalog()
        self.economy: EconomyLedger = economy or SqliteEconomyLedger(db_path)
        self.trust = TrustLedger(self.state, self.settings, clock)
        self.transport: ChatTransport = transport or LoggingTransport()
        self.scheduler = scheduler if scheduler is not None else create_scheduler()
        self._rng_factory = rng_factory
        self._clock = clock
        self._controllers: Dict[str, RoomHeistController] = {}
        self._registry_lock = threading.RLock()
        self._started = False
        self._telemetry = get_telemetry()

    # Registry ----------------------------------------------------------
    def controller_for(self, room_id: str) -> RoomHeistController:
        """Return the room's controller, building and recovering it on first use."""

        with self._registry_lock:
            controller = self._controllers.get(room_id)
            if controller is not None:
                return controller
            rng = self._rng_factory(room_id) if self._rng_factory else None
            controller = RoomHeistController(
                room_id,
                settings=self.settings,
                state=self.state,
                catalog=self.catalog,
                economy=self.economy,
                trust=self.trust,
                scheduler=self.scheduler,
                transport=self.transport,
                rng=rng,
                clock=self._clock,
            )
            self._controllers[room_id] = controller
            controller.recover()
            return controller

    def rooms(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._controllers)

    def start(self, room_ids: Iterable[str] = ()) -> List[str]:
        """Reconcile every known room from persisted config, then start the timers."""

        wanted = list(self.settings.rooms) + list(room_ids) + self.state.known_rooms()
        recovered: List[str] = []
        for room_id in dict.fromkeys(wanted):
            try:
                self.controller_for(room_id)
            except Exception:
                logger.exception("Failed to recover heist room %s", room_id)
                self._telemetry.track_error("RecoveryError", command="start", room_id=room_id)
                continue
            recovered.append(room_id)
        try:
            self._telemetry.cleanup_old_data()
        except sqlite3.Error as exc:
            logger.warning("Telemetry cleanup skipped: %s", exc)
        if not getattr(self.scheduler, "running", False):
            self.scheduler.start()
        self._started = True
        self._telemetry.track_system_event("heist_service_started", reason=",".join(recovered))
        logger.info("Heist service started for rooms: %s", ", ".join(recovered) or "(none)")
        return recovered

    def shutdown(self) -> None:
        if getattr(self.scheduler, "running", False):
            self.scheduler.shutdown(wait=False)
        self._telemetry.flush()
        self._started = False

    # Privileged operations ---------------------------------------------
    def _require_admin(self, requesting_user: str, operation: str, override: bool) -> str:
        name = normalize_username(requesting_user)
        if override or name in self.settings.admins:
            return name
        raise PermissionDeniedError(requesting_user, operation)

    def force_advance(
        self, room_id: str, requesting_user: str, *, override: bool = False
    ) -> HeistStatus:
        name = self._require_admin(requesting_user, "force-advance the heist", override)
        logger.info("%s force-advanced room %s", name, room_id)
        return self.controller_for(room_id).force_advance()

    def force_start(
        self, room_id: str, requesting_user: str, *, override: bool = False
    ) -> HeistStatus:
        name = self._require_admin(requesting_user, "start a heist", override)
        logger.info("%s force-started a heist in room %s", name, room_id)
        return self.controller_for(room_id).force_start()

    def recover(
        self, room_id: str, requesting_user: str, *, override: bool = False
    ) -> HeistStatus:
        """Resume a room halted by a storage failure from its persisted phase."""

        name = self._require_admin(requesting_user, "recover the heist", override)
        logger.info("%s asked to recover room %s", name, room_id)
        return self.controller_for(room_id).resume_after_halt()

    def retry_payouts(
        self,
        room_id: str,
        session_id: int,
        username: Optional[str] = None,
    ) -> PayoutReport:
        return self.controller_for(room_id).retry_payouts(session_id, username)

    def telemetry_report(self) -> Dict[str, object]:
        return self._telemetry.generate_report()

    # Participant operations --------------------------------------------
    def get_status(self, room_id: str) -> HeistStatus:
        return self.controller_for(room_id).status()

    def cast_vote(self, room_id: str, username: str, crime_id: str) -> str:
        return self.controller_for(room_id).cast_vote(username, crime_id)

    def record_activity(self, room_id: str, username: str) -> None:
        self.controller_for(room_id).record_activity(username)

    def balance(self, username: str) -> int:
        return self.economy.get_balance(normalize_username(username))

    def trust_status(self, username: str) -> Dict[str, object]:
        name = normalize_username(username)
        record = self.trust.get(name)
        return {
            "username": name,
            "trust": record.trust_score,
            "title": self.trust.title(name),
            "heists_participated": record.heists_participated,
            "last_participation_time": record.last_participation_time.isoformat()
            if record.last_participation_time
            else None,
            "balance": self.economy.get_balance(name),
        }

    def vouch(self, giver: str, target: str, amount: int) -> TrustRecord:
        return self.trust.vouch(normalize_username(giver), normalize_username(target), amount)


__all__ = ["HeistService"]
