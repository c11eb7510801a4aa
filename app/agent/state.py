# app/agent/state.py
"""
Agent spending state and its persistence.

One state document per wallet address: today's spend, the date it was
last reset and the set of payment keys already paid. The wallet saves
the whole document after every payment, before the proof is handed back
to the caller.
"""
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

PAID_ENTRY_TTL_SECONDS = 24 * 60 * 60


@dataclass
class WalletPolicyState:
    """
    Mutable spending state of one agent wallet.

    Attributes:
        spent_today: Sum of payments made since last_reset_date
        last_reset_date: ISO date of the last daily reset
        paid: payment key -> unix timestamp of the payment
    """
    spent_today: Decimal = Decimal(0)
    last_reset_date: str = field(default_factory=lambda: date.today().isoformat())
    paid: Dict[str, float] = field(default_factory=dict)

    def roll_over(self, today: Optional[date] = None, now: Optional[float] = None) -> bool:
        """
        Reset the daily spend on a new day and prune paid entries older
        than 24 hours.

        Returns:
            True if anything changed
        """
        today_iso = (today or date.today()).isoformat()
        now = time.time() if now is None else now
        changed = False

        if self.last_reset_date != today_iso:
            logger.info(f"agent: new day {today_iso}, resetting spend of {self.spent_today}")
            self.spent_today = Decimal(0)
            self.last_reset_date = today_iso
            changed = True

        expired = [key for key, paid_at in self.paid.items() if now - paid_at > PAID_ENTRY_TTL_SECONDS]
        for key in expired:
            del self.paid[key]
        return changed or bool(expired)

    def has_paid(self, payment_key: str) -> bool:
        return payment_key in self.paid

    def record_payment(self, payment_key: str, amount: Decimal, now: Optional[float] = None) -> None:
        self.spent_today += amount
        self.paid[payment_key] = time.time() if now is None else now

    def to_dict(self) -> Dict:
        return {
            "spentToday": str(self.spent_today),
            "lastResetDate": self.last_reset_date,
            "paid": dict(self.paid),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "WalletPolicyState":
        return cls(
            spent_today=Decimal(str(data.get("spentToday", "0"))),
            last_reset_date=data.get("lastResetDate") or date.today().isoformat(),
            paid={str(k): float(v) for k, v in (data.get("paid") or {}).items()},
        )


class StateStore(ABC):
    """Persistence for WalletPolicyState, keyed by wallet address."""

    @abstractmethod
    def load(self, address: str) -> WalletPolicyState:
        """Load the state for `address`; a fresh state if none was saved."""

    @abstractmethod
    def save(self, address: str, state: WalletPolicyState) -> None:
        ...


class MemoryStateStore(StateStore):
    """Process-local state store (tests, short-lived agents)."""

    def __init__(self):
        self._states: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def load(self, address):
        with self._lock:
            data = self._states.get(address.lower())
        return WalletPolicyState.from_dict(data) if data else WalletPolicyState()

    def save(self, address, state):
        with self._lock:
            self._states[address.lower()] = state.to_dict()


class JsonFileStateStore(StateStore):
    """
    One JSON file per wallet address under `directory`.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so a crash leaves either the old or the new
    document, never a truncated one.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, address: str) -> Path:
        return self.directory / f"{address.lower()}.json"

    def load(self, address):
        path = self.path_for(address)
        if not path.exists():
            return WalletPolicyState()
        with open(path, "r") as f:
            return WalletPolicyState.from_dict(json.load(f))

    def save(self, address, state):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(address)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.directory), prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"agent: saved state for {address} to {path}")
