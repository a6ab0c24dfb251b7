"""
LedgerObject — снапшот объекта ledger, прочитанный клиентом
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .transaction import ObjectInput, ObjectOwnership
from .values import normalize_address


# Маркеры владения, не являющиеся адресом
OWNER_SHARED = "shared"
OWNER_IMMUTABLE = "immutable"


class LedgerObject(BaseModel):
    """
    Объект ledger: id, версия, полный тип, владелец, содержимое.

    owner — адрес владельца, 'shared' или 'immutable'.
    """

    object_id: str
    version: int = Field(..., ge=0)
    type_tag: str
    owner: str
    content: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("object_id")
    @classmethod
    def validate_object_id(cls, v: str) -> str:
        return normalize_address(v)

    @property
    def is_shared(self) -> bool:
        return self.owner == OWNER_SHARED

    def as_input(self, mutable: bool = True, ownership: Optional[ObjectOwnership] = None) -> ObjectInput:
        """ObjectInput, ссылающийся на текущую версию объекта."""
        if ownership is None:
            ownership = ObjectOwnership.SHARED if self.is_shared else ObjectOwnership.OWNED
        return ObjectInput(
            object_id=self.object_id,
            version=self.version,
            ownership=ownership,
            mutable=mutable,
            type_tag=self.type_tag,
        )
