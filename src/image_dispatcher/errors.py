"""Typed failures reported by the dispatcher."""

from __future__ import annotations

from .models import FailureKind


class DispatchError(RuntimeError):
    """Base error for a dispatch that could not produce an image."""

    kind: FailureKind = FailureKind.dispatch

    def __init__(self, message: str, *, run_url: str | None = None) -> None:
        super().__init__(message)
        self.run_url = run_url


class CheckoutError(DispatchError):
    """Source repository or branch could not be checked out."""

    kind = FailureKind.checkout


class BuildStepError(DispatchError):
    """The image build itself failed on the build agent."""

    kind = FailureKind.build


class RegistryAuthError(DispatchError):
    """Credentials were rejected by the registry or the GitHub API."""

    kind = FailureKind.registry_auth


class RegistryPushError(DispatchError):
    """The image was built but never reached the registry intact."""

    kind = FailureKind.registry_push


class RunCancelledError(DispatchError):
    kind = FailureKind.cancelled


class RunTimeoutError(DispatchError):
    kind = FailureKind.timeout


class PackageVisibilityError(DispatchError):
    """The package is not public and must be changed in the GitHub UI."""

    def __init__(self, message: str, *, visibility: str | None, settings_url: str) -> None:
        super().__init__(message)
        self.visibility = visibility
        self.settings_url = settings_url


ERRORS_BY_KIND: dict[FailureKind, type[DispatchError]] = {
    FailureKind.checkout: CheckoutError,
    FailureKind.build: BuildStepError,
    FailureKind.registry_auth: RegistryAuthError,
    FailureKind.registry_push: RegistryPushError,
    FailureKind.cancelled: RunCancelledError,
    FailureKind.timeout: RunTimeoutError,
    FailureKind.dispatch: DispatchError,
}
