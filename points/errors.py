class PointsError(Exception):
    pass


class ValidationError(PointsError):
    pass


class InvalidRewardError(PointsError):
    pass


class InsufficientBalanceError(PointsError):
    def __init__(self, account_id: str, balance: int, cost: int):
        super().__init__(f"Account {account_id} has {balance} points, needs {cost}")
        self.account_id = account_id
        self.balance = balance
        self.cost = cost


class IdempotencyConflictError(PointsError):
    pass


class AccountNotFoundError(PointsError):
    pass


class AccountDeactivatedError(AccountNotFoundError):
    pass


class ConflictRetriesExhaustedError(PointsError):
    pass


class InvariantViolationError(PointsError):
    pass


class InternalStoreError(PointsError):
    pass


class LedgerCorruptionError(PointsError):
    pass


class CatalogError(PointsError):
    pass


class VoucherNotFoundError(PointsError):
    pass


class InvalidVoucherTransitionError(PointsError):
    pass
