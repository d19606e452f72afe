class SharesGateError(Exception):
    pass


class ConfigError(SharesGateError, ValueError):
    pass


class StartupError(SharesGateError):
    pass


class RPCError(SharesGateError):
    """Transient chain node failure; callers retry after a fixed delay."""


class QueryError(SharesGateError):
    pass


class NotifierError(SharesGateError):
    pass


class VerificationError(SharesGateError):
    pass


class MalformedSignature(VerificationError):
    pass


class RecoveryFailed(VerificationError):
    pass


class AddressMismatch(RecoveryFailed):
    def __init__(self, recovered: str, claimed: str):
        super().__init__(f"address mismatch: recovered {recovered}, claimed {claimed}")
        self.recovered = recovered
        self.claimed = claimed
