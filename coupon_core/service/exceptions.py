class ClaimError(Exception):
    pass


class TransientStoreFailure(ClaimError):
    """The store could not be reached or did not answer in time.

    The request may be retried with backoff. Callers must not tell the end
    user more than that something went wrong.
    """


class StoreUnavailable(TransientStoreFailure):
    pass


class StoreTimeout(TransientStoreFailure):
    pass


class ContentionExceeded(TransientStoreFailure):
    pass


class InvariantViolation(ClaimError):
    pass


class ClaimRefConflict(ClaimError):
    """The claim ref of a request already belongs to another claim."""
