from __future__ import annotations


class FatalPrecondition(Exception):
    """A run cannot start or continue; the operator has to intervene."""


class DestinationExists(FatalPrecondition):
    pass


class DecryptToolMissing(FatalPrecondition):
    def __init__(self, message: str, *, remedy: str) -> None:
        super().__init__(message)
        self.remedy = remedy

    def __str__(self) -> str:
        return f"{self.args[0]}\n\n{self.remedy}"


class DeviceCollision(FatalPrecondition):
    pass
