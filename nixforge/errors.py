"""Exception hierarchy for nixforge.

Errors are grouped by the failure class the convergence controller cares
about.  Lower layers raise the most specific type they can and attach the
context (command line, captured stderr, offending key) needed to diagnose
the failure; the controller never inspects messages.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nixforge.models.state import ConvergenceStep


class NixforgeError(RuntimeError):
    """Base class for every error raised by nixforge."""


# ---------------------------------------------------------------------------
# Configuration errors: fatal, never retried
# ---------------------------------------------------------------------------


class ConfigurationError(NixforgeError):
    """Raised when declared configuration cannot be used as given."""


class InvalidCIDRError(ConfigurationError):
    """Raised when an address filter or priority entry is not a valid CIDR."""

    def __init__(self, cidr: str, reason: str = "") -> None:
        self.cidr = cidr
        message = f"failed to parse cidr {cidr!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UnsupportedSecretsBackendError(ConfigurationError):
    """Raised when the secrets backend name is not one of the known backends."""

    def __init__(self, name: str, supported: Sequence[str]) -> None:
        self.name = name
        self.supported = list(supported)
        super().__init__(
            f"unsupported secrets provider {name!r}, "
            f"supported providers are: {', '.join(self.supported)}"
        )


class UnsupportedActivationActionError(ConfigurationError):
    """Raised when the activation action is not switch/boot/test/dry-activate."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"unsupported activation action: {action!r}")


class MissingArtifactOutputError(ConfigurationError):
    """Raised when the configured system output is absent from the artifact."""

    def __init__(self, output: str, available: Sequence[str]) -> None:
        self.output = output
        self.available = list(available)
        super().__init__(
            f"artifact has no output {output!r} "
            f"(available: {', '.join(self.available) or 'none'})"
        )


class ConfigFileError(ConfigurationError):
    """Raised when a configuration file cannot be read or validated."""


# ---------------------------------------------------------------------------
# Address selection
# ---------------------------------------------------------------------------


class AddressError(NixforgeError):
    """Base class for address selection failures."""


class AddressParseError(AddressError):
    """Raised when none of the candidate addresses can be parsed."""

    def __init__(self, candidates: Sequence[str]) -> None:
        self.candidates = list(candidates)
        super().__init__(
            f"none of the candidate addresses could be parsed: {self.candidates!r}"
        )


class NoAddressMatchedError(AddressError):
    """Raised when filtering leaves no usable address."""

    def __init__(self, candidates: Sequence[str]) -> None:
        self.candidates = list(candidates)
        super().__init__(
            f"no address from list {self.candidates!r} matched "
            "with current address filters"
        )


# ---------------------------------------------------------------------------
# Subprocesses
# ---------------------------------------------------------------------------


class SubprocessError(NixforgeError):
    """Raised when an external program fails to launch or exits nonzero."""

    def __init__(
        self,
        command: Sequence[str],
        stderr: bytes = b"",
        returncode: int | None = None,
    ) -> None:
        self.command = list(command)
        self.stderr = stderr
        self.returncode = returncode
        detail = stderr.decode("utf-8", errors="replace").strip()
        super().__init__(
            f"subcommand {' '.join(self.command)!r} exited with "
            f"{returncode if returncode is not None else 'launch failure'}: {detail}"
        )


class UnmarshalError(NixforgeError):
    """Raised when captured output cannot be decoded into the target type."""


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


class BuildError(NixforgeError):
    """Base class for build cardinality failures."""


class NoArtifactProducedError(BuildError):
    """Raised when the build produced no artifact."""

    def __init__(self, configuration: str) -> None:
        self.configuration = configuration
        super().__init__(f"no derivations were built for {configuration!r} configuration")


class AmbiguousArtifactError(BuildError):
    """Raised when the build produced more than one top-level artifact."""

    def __init__(self, configuration: str, count: int) -> None:
        self.configuration = configuration
        self.count = count
        super().__init__(
            f"{count} derivations were built for {configuration!r} configuration "
            "(expecting single derivation)"
        )


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class SecretResolutionError(NixforgeError):
    """Raised when a secret cannot be read from its backend."""

    def __init__(self, source: str, backend: str, reason: str = "") -> None:
        self.source = source
        self.backend = backend
        message = f"failed to get secret {source!r} from provider {backend!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class SecretDestroyedError(NixforgeError):
    """Raised when secret memory is accessed after it was released."""


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


class InvalidTransitionError(NixforgeError):
    """Raised when a requested state transition is not valid."""


class ConvergenceError(NixforgeError):
    """A pipeline step failed.

    The controller decides whether to retry from ``step`` alone; ``cause``
    is the underlying error.
    """

    def __init__(self, step: ConvergenceStep, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"{step.value} step failed: {cause}")

    @property
    def retryable(self) -> bool:
        return self.step.retryable
