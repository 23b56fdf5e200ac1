"""Emulation harness that produces validation data from IMDAppleServices."""

from nac_emulator.errors import (
    EmulationFault,
    FormatError,
    InvalidHandle,
    InvalidHookArity,
    InvalidObjectType,
    KeyNotFound,
    NacCallError,
    NacError,
    SessionError,
    UnresolvedHook,
)
from nac_emulator.nac import generate_validation_bytes, generate_validation_data

__all__ = [
    "EmulationFault",
    "FormatError",
    "InvalidHandle",
    "InvalidHookArity",
    "InvalidObjectType",
    "KeyNotFound",
    "NacCallError",
    "NacError",
    "SessionError",
    "UnresolvedHook",
    "generate_validation_bytes",
    "generate_validation_data",
]

__version__ = "0.1.0"
