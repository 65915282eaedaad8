from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Standard GreenCart API error codes."""

    E001 = "E001"  # Validation: Invalid input
    E002 = "E002"  # Simulation: Invalid configuration
    E003 = "E003"  # Storage: Persistence failure
    E004 = "E004"  # Lookup: Not found
    E005 = "E005"  # Auth: Unauthorized
    E006 = "E006"  # Auth: Insufficient permissions
    E007 = "E007"  # Rate limit: Too many requests
    E010 = "E010"  # Internal: Internal error


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.E001: "Validation error",
    ErrorCode.E002: "Invalid simulation configuration",
    ErrorCode.E003: "Persistence failure",
    ErrorCode.E004: "Not found",
    ErrorCode.E005: "Unauthorized",
    ErrorCode.E006: "Insufficient permissions",
    ErrorCode.E007: "Too many requests",
    ErrorCode.E010: "Internal server error",
}
