# core/errors.py


class ArenaError(Exception):
    """Base class for every error raised by the tracker."""


class SourceUnavailableError(ArenaError):
    def __init__(self, message="Source unavailable", source=None):
        self.source = source
        super().__init__(message)


class LedgerError(SourceUnavailableError):
    def __init__(self, message="Ledger read failed"):
        super().__init__(message, source="ledger")


class OperatorAPIError(SourceUnavailableError):
    def __init__(self, message, status=None):
        self.status = status
        super().__init__(f"Operator API error: {message} (Status: {status})", source="operator")


class OperatorAuthError(ArenaError):
    def __init__(self, message="Operator authentication failed"):
        super().__init__(message)


class TransactionRevertedError(ArenaError):
    def __init__(self, tx_hash=None):
        self.tx_hash = tx_hash
        super().__init__(f"Transaction reverted: {tx_hash}")


class OutputDecodeError(ArenaError):
    pass


class ProvisionNotFoundError(ArenaError):
    def __init__(self, provision_id):
        self.provision_id = provision_id
        super().__init__(f"Unknown provision: {provision_id}")


class InvalidTransitionError(ArenaError):
    def __init__(self, provision_id, current, requested):
        self.provision_id = provision_id
        self.current = current
        self.requested = requested
        super().__init__(f"Provision {provision_id}: cannot move from {current} to {requested}")


class BotNotFoundError(ArenaError):
    def __init__(self, message="Bot not found on operator. It may still be registering."):
        super().__init__(message)
