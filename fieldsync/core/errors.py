from __future__ import annotations


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class ItemNotFoundError(BusinessError):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class StorageCapacityError(PersistenceError):
    """El almacenamiento local no admite más escrituras."""


class ExternalServiceError(InfraError):
    pass


class TransientExternalError(ExternalServiceError):
    pass


class RemoteTimeoutError(TransientExternalError):
    pass


class PermanentExternalError(ExternalServiceError):
    pass


class EntityNotFoundError(PermanentExternalError):
    pass
