from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class ImageNotFoundError(DomainValidationError):
    pass


class MediaTransferError(DomainDependencyError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CapabilityDeniedError(MediaTransferError):
    pass


class FilterError(DomainDependencyError):
    pass
