import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class Account:
    id: int
    name: str
    cookies: Dict[str, str] = field(default_factory=dict)
    expiration_date: Optional[float] = None
    suspended_until: Optional[float] = None

    def is_suspended(self, now: Optional[float] = None) -> bool:
        if not self.suspended_until:
            return False
        return (now if now is not None else time.time()) < self.suspended_until

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "expiration_date": self.expiration_date,
            "suspended_until": self.suspended_until,
        }


SuspensionListener = Callable[[Account], None]


class AccountRegistry:
    """In-memory view of every stored account"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._accounts: Dict[int, Account] = {}
        self._listeners: List[SuspensionListener] = []

    def __contains__(self, account_id: int) -> bool:
        return account_id in self._accounts

    def __len__(self) -> int:
        return len(self._accounts)

    def all(self) -> List[Account]:
        return list(self._accounts.values())

    def get(self, account_id: int) -> Optional[Account]:
        return self._accounts.get(account_id)

    def add(self, account: Account):
        self._accounts[account.id] = account

    def remove(self, account_id: int) -> Optional[Account]:
        return self._accounts.pop(account_id, None)

    def is_suspended(self, account_id: int) -> bool:
        account = self._accounts.get(account_id)
        return account is not None and account.is_suspended(self.clock())

    def on_suspended(self, listener: SuspensionListener):
        self._listeners.append(listener)

    def mark_suspended(self, account_id: int, until: float):
        account = self._accounts.get(account_id)
        if account is None:
            return
        account.suspended_until = until
        logger.warning(f"({account.name}#{account.id}) Suspended until {time.ctime(until)}.")
        for listener in self._listeners:
            listener(account)


class AccountClaims:
    """Which template currently owns which accounts.

    A template claims all of its accounts in one step or none at all, and
    releases only the accounts it owns.
    """

    def __init__(self):
        self._owners: Dict[int, str] = {}

    def owner_of(self, account_id: int) -> Optional[str]:
        return self._owners.get(account_id)

    def is_busy(self, account_id: int) -> bool:
        return account_id in self._owners

    def busy_ids(self) -> Set[int]:
        return set(self._owners)

    def can_claim(self, owner: str, account_ids: Iterable[int]) -> bool:
        return all(self._owners.get(a, owner) == owner for a in account_ids)

    def try_claim(self, owner: str, account_ids: Iterable[int]) -> bool:
        ids = list(account_ids)
        if not self.can_claim(owner, ids):
            return False
        for account_id in ids:
            self._owners[account_id] = owner
        return True

    def release(self, owner: str, account_ids: Optional[Iterable[int]] = None):
        ids = list(account_ids) if account_ids is not None else list(self._owners)
        for account_id in ids:
            if self._owners.get(account_id) == owner:
                del self._owners[account_id]
