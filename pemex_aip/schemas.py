from typing import Any, Literal, Optional

from ninja import Schema
from pydantic import SecretStr


class ReturnSchema(Schema):
    timestamp: int
    status: int
    message: str
    data: Any


class ExportSchema(Schema):
    thumbprint: str
    scope: Literal["UserPersonal", "MachinePersonal"] = "UserPersonal"
    password: SecretStr
    name: Optional[str] = None
    policy: Literal["Abort", "Overwrite", "RenameWithTimestamp"] = "Abort"
