class PhotoBatchError(Exception):
    code = "ERROR"


class InsufficientCredits(PhotoBatchError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, user_id: str, required: int, balance: int) -> None:
        self.user_id = user_id
        self.required = required
        self.balance = balance
        self.shortfall = max(0, required - balance)
        super().__init__(f"user {user_id} needs {required} credits, has {balance}")


class InvalidInput(PhotoBatchError):
    code = "INVALID_INPUT"


class InvalidJobType(InvalidInput):
    code = "INVALID_JOB_TYPE"


class InvalidBatchSize(InvalidInput):
    code = "INVALID_BATCH_SIZE"


class JobNotFound(PhotoBatchError):
    code = "JOB_NOT_FOUND"


class JobAccessDenied(PhotoBatchError):
    code = "JOB_ACCESS_DENIED"


class JobNotCancellable(PhotoBatchError):
    code = "JOB_NOT_CANCELLABLE"


class GeneratorError(PhotoBatchError):
    code = "GENERATOR_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        if code:
            self.code = code
        super().__init__(message)


class TransientGeneratorFailure(GeneratorError):
    code = "GENERATOR_TRANSIENT"


class PermanentGeneratorFailure(GeneratorError):
    code = "GENERATOR_PERMANENT"


class RetryCeilingExceeded(GeneratorError):
    code = "RETRY_CEILING_EXCEEDED"


class DuplicateDelivery(PhotoBatchError):
    code = "DUPLICATE_DELIVERY"


class QueueUnavailable(PhotoBatchError):
    code = "QUEUE_UNAVAILABLE"

    def __init__(self, message: str, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)
