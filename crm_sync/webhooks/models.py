from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class HoldedPayment(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    amount: float = 0.0
    date: Optional[str] = None
    method: Optional[str] = None


class HoldedDocumentEvent(BaseModel):
    """Document notification posted by Holded (invoice paid, updated, ...)."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    type: Optional[str] = Field(None, description="Event type, e.g. document.updated")
    doc_type: Optional[str] = Field(None, alias="docType")
    id: str = Field(..., description="Holded document id")
    serial_number: Optional[str] = Field(None, alias="serialNumber")
    doc_number: Optional[str] = Field(None, alias="docNumber")
    status: Optional[str] = None
    contact_id: Optional[str] = Field(None, alias="contactId")
    total: float = 0.0
    currency: Optional[str] = None
    payments: List[HoldedPayment] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_invoice(self) -> bool:
        return "invoice" in (self.doc_type or "").lower()

    @property
    def number(self) -> Optional[str]:
        return self.serial_number or self.doc_number

    @property
    def order_id(self) -> Optional[str]:
        oid = self.meta.get("orderId")
        return str(oid) if oid else None
