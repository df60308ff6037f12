from pydantic import BaseModel


class CapabilityCheck(BaseModel):
    capability: str
    allowed: bool


class PermissionReport(BaseModel):
    operation: str | None = None
    checks: list[CapabilityCheck]

    @property
    def missing(self) -> list[str]:
        return [c.capability for c in self.checks if not c.allowed]

    @property
    def ok(self) -> bool:
        return not self.missing
