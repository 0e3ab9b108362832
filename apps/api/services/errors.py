"""Typed service errors shared by the ledger, providers, storage, uploads and orchestrator."""

from __future__ import annotations

from typing import Optional


class ServiceError(RuntimeError):
    """Base error carrying a stable code and an end-user safe message."""

    code = "ServiceError"
    status_code = 500
    user_message = "Request could not be completed. Try again later."

    def __init__(self, message: Optional[str] = None, *, user_message: Optional[str] = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.user_message}


# Ledger


class InsufficientCreditsError(ServiceError):
    code = "InsufficientCredits"
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        self.required = int(required)
        self.available = int(available)
        message = f"Insufficient credits. Required: {self.required}, available: {self.available}."
        super().__init__(message, user_message=message)


class InvalidHoldStateError(ServiceError):
    code = "InvalidHoldState"
    status_code = 409


class AlreadyProcessedError(ServiceError):
    code = "AlreadyProcessed"
    status_code = 409


class HoldNotFoundError(ServiceError):
    code = "HoldNotFound"
    status_code = 404


# Validation


class UnsupportedModelError(ServiceError):
    code = "UnsupportedModel"
    status_code = 422

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=message)


class UnsupportedProviderError(ServiceError):
    code = "UnsupportedProvider"
    status_code = 400

    def __init__(self, provider: str) -> None:
        message = f"Unknown provider: {provider}"
        super().__init__(message, user_message=message)


# Provider boundary


class ProviderError(ServiceError):
    code = "ProviderError"
    status_code = 502
    user_message = "Video provider request failed. Try again later."

    def __init__(self, message: str, *, provider: str = "", http_status: Optional[int] = None) -> None:
        self.provider = provider
        self.http_status = http_status
        super().__init__(message)


class ProviderAuthError(ProviderError):
    code = "ProviderAuthError"
    status_code = 503
    user_message = "Video provider is unavailable. Try again later."


class ProviderRateLimitedError(ProviderError):
    code = "ProviderRateLimited"
    status_code = 429
    user_message = "Video provider is busy. Retry in a moment."


class ProviderTaskNotFoundError(ProviderError):
    code = "ProviderTaskNotFound"
    status_code = 404
    user_message = "Video task was not found at the provider."


class ProviderGenericError(ProviderError):
    code = "ProviderError"


# Storage


class StorageMigrationError(ServiceError):
    code = "StorageMigrationError"
    status_code = 503
    user_message = "Video is still being saved. Check back shortly."


# Uploads


class InvalidUploadError(ServiceError):
    code = "InvalidUpload"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=message)


class UploadTooLargeError(ServiceError):
    code = "FileTooLarge"
    status_code = 413

    def __init__(self, max_bytes: int) -> None:
        message = f"File too large. Max {max_bytes // (1024 * 1024)}MB."
        super().__init__(message, user_message=message)


# Jobs


class VideoNotFoundError(ServiceError):
    code = "VideoNotFound"
    status_code = 404
    user_message = "Video not found."


class CallbackTaskMismatchError(ServiceError):
    code = "CallbackTaskMismatch"
    status_code = 409
    user_message = "Callback does not match the stored task."
