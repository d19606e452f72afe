import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .chains.base import Blockchain
from .errors import NotifierError, QueryError, VerificationError
from .models import GateDecision, LedgerTransition, Permission
from .notifier import AccessNotifier
from .storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class GateCheckResult:
    success: bool
    granted: bool = False
    error: Optional[str] = None
    status: int = 200
    address: Optional[str] = None


class AccessPolicy:
    """Turns ledger transitions and signed challenges into gate decisions.

    The target community for a subject is the agent registered for
    (subject, chain); without one the default group and bot are used.
    """

    def __init__(
        self,
        storage: Storage,
        notifier: AccessNotifier,
        default_bot_token: str = "",
        default_chat_id: str = "",
        clear_gate_on_ungate: bool = False,
    ):
        self.storage = storage
        self.notifier = notifier
        self.default_bot_token = default_bot_token
        self.default_chat_id = default_chat_id
        self.clear_gate_on_ungate = clear_gate_on_ungate

    def resolve_community(self, subject: str, chain_type: str) -> Optional[Tuple[str, str]]:
        agent = self.storage.find_agent_by_subject(subject, chain_type)
        if agent is not None:
            return agent.chat_group_id, agent.bot_token
        if self.default_chat_id and self.default_bot_token:
            return self.default_chat_id, self.default_bot_token
        return None

    def evaluate(self, transition: Optional[LedgerTransition]) -> Optional[GateDecision]:
        # gated_flag belongs to (address, chain): a first buy of any subject can ungate
        if transition is None or transition.mapping is None:
            return None
        mapping = transition.mapping
        if transition.is_buy:
            if not (mapping.gated_flag and transition.balance > 0):
                return None
            permission = Permission.FULL
        else:
            if not transition.gated_now:
                return None
            permission = Permission.NONE

        community = self.resolve_community(transition.subject, transition.chain_type)
        if community is None:
            logger.warning("No telegram bot info found for subject %s", transition.subject)
            return None
        chat_id, bot_token = community
        return GateDecision(
            external_identity=mapping.external_identity,
            chat_id=chat_id,
            permission=permission,
            bot_token=bot_token,
            address=transition.trader,
            chain_type=transition.chain_type,
        )

    async def enforce(self, decision: GateDecision) -> None:
        await self.notifier.set_permissions(
            decision.bot_token, decision.chat_id, decision.external_identity, decision.permission
        )
        if decision.permission == Permission.FULL and self.clear_gate_on_ungate and decision.address:
            self.storage.set_gated_flag(decision.address, decision.chain_type, False)

    async def enforce_quietly(self, decision: GateDecision) -> bool:
        try:
            await self.enforce(decision)
        except NotifierError as e:
            logger.warning(
                "failed to set %s permissions for %s in %s: %s",
                decision.permission.value, decision.external_identity, decision.chat_id, e,
            )
            return False
        return True

    async def verify_and_gate(
        self,
        chain: Blockchain,
        challenge: str,
        signature: str,
        user: str,
        chat_id: Optional[str] = None,
    ) -> GateCheckResult:
        chat = str(chat_id).strip() if chat_id else self.default_chat_id
        agent = self.storage.find_agent_by_chat(chat, chain.name)
        if agent is None:
            logger.info("No bot info found for chat_id %s and chain %s", chat, chain.name)
            return GateCheckResult(
                success=False,
                error=f"Bot not found for this chat_id in {chain.name} chain",
                status=404,
            )

        try:
            address = chain.verify_claim(challenge, signature, user)
        except VerificationError as e:
            logger.info("signature verification failed for %s on %s: %s", user, chain.name, e)
            return GateCheckResult(success=False, error=str(e), status=401)

        identity = challenge.strip()
        self.storage.upsert_identity_mapping(address, chain.name, identity)

        try:
            balance = await chain.get_share_balance(agent.subject_address, address)
        except QueryError as e:
            logger.warning("Failed to get shares balance for %s: %s", address, e)
            return GateCheckResult(success=False, error=str(e), status=502, address=address)
        logger.info("User %s balance for subject %s: %s", address, agent.subject_address, balance)
        if balance <= 0:
            return GateCheckResult(success=True, granted=False, address=address)

        decision = GateDecision(
            external_identity=identity,
            chat_id=agent.chat_group_id,
            permission=Permission.FULL,
            bot_token=agent.bot_token,
            address=address,
            chain_type=chain.name,
        )
        try:
            await self.enforce(decision)
        except NotifierError as e:
            logger.warning("restrict_chat_member failed for %s: %s", identity, e)
            return GateCheckResult(
                success=False,
                error=f"Telegram restrict_chat_member failed: {e}",
                status=500,
                address=address,
            )
        return GateCheckResult(success=True, granted=True, address=address)
