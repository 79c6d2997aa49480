"""
CI Common module.

This module contains shared domain models, the error taxonomy and the driver
interface used across the ci-bridge components (drivers, runner, CLI).

The common module has no dependencies on other ci_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .driver import Driver
from .errors import (
    ApiError,
    AuthenticationError,
    CIError,
    ConfigurationError,
    NotFoundError,
    ResolutionError,
    ResourceError,
    UnsupportedOperation,
)
from .models import (
    Asset,
    Comment,
    Job,
    Pipeline,
    PullRequest,
    Repository,
    Runner,
    RunnerBinary,
    RunnerLogPatterns,
    RunnerOptions,
    RunnerRegistration,
)

__all__ = [
    "ApiError",
    "Asset",
    "AuthenticationError",
    "CIError",
    "Comment",
    "ConfigurationError",
    "Driver",
    "Job",
    "NotFoundError",
    "Pipeline",
    "PullRequest",
    "Repository",
    "ResolutionError",
    "ResourceError",
    "Runner",
    "RunnerBinary",
    "RunnerLogPatterns",
    "RunnerOptions",
    "RunnerRegistration",
    "UnsupportedOperation",
]
