"""Exceptions raised by the resolver.

The resolver reports every failure with :class:`ResolutionError` or one of
its subclasses. Subclasses only refine the message; callers that do not care
why a resolve failed can catch the base class.
"""

from typing import Iterable, Optional

__all__ = [
    "ResolutionError",
    "MissingRequirementError",
    "UsesConstraintViolation",
    "FragmentNotSelectedError",
    "DynamicResolutionError",
    "ResolutionCancelled",
]


class ResolutionError(Exception):
    """Raised when a set of resources cannot be resolved.

    Attributes:
        unresolved_requirements: Requirements that could not be satisfied when
            resolution gave up. Not guaranteed to be exhaustive.
    """

    def __init__(self, message: str, unresolved_requirements: Iterable = ()):
        super().__init__(message)
        self.unresolved_requirements = tuple(unresolved_requirements)

    @property
    def message(self) -> str:
        return self.args[0]


class MissingRequirementError(ResolutionError):
    """A mandatory requirement has no candidate left."""

    def __init__(self, requirement, cause: Optional[ResolutionError] = None):
        message = (
            f"Unable to resolve {requirement.resource!r}: "
            f"missing requirement {requirement!r}"
        )
        if cause is not None:
            message += f" [caused by: {cause.message}]"
        super().__init__(message, [requirement])
        self.requirement = requirement
        self.cause = cause


class UsesConstraintViolation(ResolutionError):
    """A resource would see two incompatible providers of the same package.

    Attributes:
        resource: The resource whose package space is inconsistent.
        package: The package exposed twice.
        capabilities: The conflicting capabilities; a single capability when the
            resource's own export conflicts with a used package.
    """

    def __init__(self, message: str, resource, package: str, capabilities, unresolved_requirements):
        super().__init__(message, unresolved_requirements)
        self.resource = resource
        self.package = package
        self.capabilities = tuple(capabilities)


class FragmentNotSelectedError(ResolutionError):
    def __init__(self, fragment):
        super().__init__(f"Fragment was not selected for attachment: {fragment!r}")
        self.fragment = fragment


class DynamicResolutionError(ResolutionError):
    """A dynamic requirement could not be given exactly one new wire."""

    def __init__(self, requirement, message: str = "Dynamic import failed."):
        super().__init__(message, [requirement])
        self.requirement = requirement


class ResolutionCancelled(ResolutionError):
    """The resolve context cancelled the resolve.

    Raised ``from`` a :class:`concurrent.futures.CancelledError`.
    """

    def __init__(self):
        super().__init__("Resolution cancelled by the resolve context")
