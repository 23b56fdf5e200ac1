"""Error types raised by the emulation harness."""

from __future__ import annotations


class NacError(Exception):
    pass


class FormatError(NacError):
    """Malformed binary container, Mach-O image or bundled fixture."""


class EmulationFault(NacError):
    """Emulation cannot produce a correct result; never retried."""


class UnresolvedHook(EmulationFault):
    pass


class InvalidHookArity(EmulationFault):
    pass


class InvalidHandle(EmulationFault):
    pass


class InvalidObjectType(EmulationFault):
    pass


class KeyNotFound(EmulationFault):
    pass


class NacCallError(EmulationFault):
    def __init__(self, routine: str, code: int) -> None:
        super().__init__(f"{routine} returned error {code}")
        self.routine = routine
        self.code = code


class SessionError(NacError):
    pass
