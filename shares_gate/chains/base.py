import abc
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..errors import AddressMismatch, MalformedSignature
from ..models import Batch, Checkpoint, TradeEvent

if TYPE_CHECKING:
    from ..access import AccessPolicy
    from ..ledger import LedgerService
    from ..storage import Storage
    from ..sync import SyncEngine, SyncIntervals


class Blockchain(abc.ABC):
    """Capability set every chain backend provides.

    ``name`` partitions checkpoints, ledger rows and identity mappings.
    Pagination shapes (block ranges, event cursors) stay inside the subclass:
    the sync engine only sees ``Checkpoint`` and ``Batch``.
    """

    name: str

    @abc.abstractmethod
    def normalize_address(self, addr: str) -> str:
        ...

    @abc.abstractmethod
    def initial_checkpoint(self) -> Checkpoint:
        ...

    @abc.abstractmethod
    async def probe(self) -> None:
        ...

    @abc.abstractmethod
    async def fetch_batch(self, checkpoint: Checkpoint) -> Optional[Batch]:
        """Return the next window after ``checkpoint``, or None when caught up.

        Raises ``RPCError`` on any fetch failure.
        """

    @abc.abstractmethod
    def decode(self, raw: Dict[str, Any]) -> TradeEvent:
        ...

    @abc.abstractmethod
    def verify_signature(self, challenge: str, signature: str) -> str:
        """Recover the canonical signer address of ``challenge``.

        Raises ``MalformedSignature`` or ``RecoveryFailed``.
        """

    @abc.abstractmethod
    async def get_share_balance(self, subject: str, user: str) -> int:
        ...

    def verify_claim(self, challenge: str, signature: str, claimed: str) -> str:
        recovered = self.verify_signature(challenge, signature)
        try:
            claimed_norm = self.normalize_address(claimed)
        except ValueError as e:
            raise MalformedSignature(f"invalid claimed address: {claimed}") from e
        if recovered != claimed_norm:
            raise AddressMismatch(recovered, claimed_norm)
        return recovered

    def create_sync_engine(
        self,
        storage: "Storage",
        ledger: "LedgerService",
        policy: "AccessPolicy",
        intervals: Optional["SyncIntervals"] = None,
    ) -> "SyncEngine":
        from ..sync import SyncEngine

        return SyncEngine(self, storage, ledger, policy, intervals=intervals)

    async def sync_events(
        self,
        storage: "Storage",
        ledger: "LedgerService",
        policy: "AccessPolicy",
        intervals: Optional["SyncIntervals"] = None,
    ) -> None:
        await self.create_sync_engine(storage, ledger, policy, intervals).run()
