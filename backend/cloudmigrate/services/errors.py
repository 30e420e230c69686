class MigrationError(Exception):
    code = "MIGRATION_ERROR"

    def __init__(self, detail: str, code: str | None = None):
        super().__init__(detail)
        self.detail = detail
        if code is not None:
            self.code = code


class ExpansionFailure(MigrationError):
    code = "EXPANSION_FAILED"


class PreparationFailure(MigrationError):
    code = "PREPARATION_FAILED"


class ItemTransferFailure(MigrationError):
    code = "ITEM_TRANSFER_FAILED"


class AuthFailure(MigrationError):
    code = "AUTH_REQUIRED"


class NotFound(MigrationError):
    code = "JOB_NOT_FOUND"


class InvalidStateTransition(MigrationError):
    code = "INVALID_STATE_TRANSITION"


class NothingToRestart(InvalidStateTransition):
    code = "NOTHING_TO_RESTART"
