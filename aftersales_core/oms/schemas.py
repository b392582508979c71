"""Typed inbound OMS payloads.

OMS sends camelCase keys and amounts in currency units; both are normalised
here. Partial updates rely on ``model_fields_set``: a field the OMS did not
send is absent from it, a field sent as null is present.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .. import constants
from ..errors import ValidationError
from ..utils.currency import to_cents
from ..utils.timestamps import parse_external_time
from ..validation import Violation

ModelT = TypeVar("ModelT", bound=BaseModel)


def _amount_to_cents(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return to_cents(value)


def _external_time(value: Any) -> Optional[datetime]:
    return parse_external_time(value)


class OmsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class OmsProduct(OmsModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", str_strip_whitespace=True)

    order_product_id: Optional[str] = Field(None, alias="orderProductId")
    product_id: Optional[str] = Field(None, alias="productId")
    product_code: Optional[str] = Field(None, alias="productCode")
    sku_id: Optional[str] = Field(None, alias="skuId")
    product_name: Optional[str] = Field(None, alias="productName")
    sku_name: Optional[str] = Field(None, alias="skuName")
    original_price_cents: Optional[int] = Field(None, alias="originalPrice")
    paid_price_cents: Optional[int] = Field(None, alias="paidPrice")
    quantity: int = 1
    refund_amount_cents: Optional[int] = Field(None, alias="refundAmount")

    @field_validator("original_price_cents", "paid_price_cents", "refund_amount_cents", mode="before")
    @classmethod
    def _to_cents(cls, v: Any) -> Optional[int]:
        return _amount_to_cents(v)

    @field_validator("order_product_id", "product_id", "product_code", "sku_id", mode="before")
    @classmethod
    def _to_str(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class OmsReturnLogistics(OmsModel):
    company: str = Field(..., min_length=1, max_length=constants.CARRIER_MAX_LENGTH)
    tracking_number: str = Field(..., alias="trackingNumber", min_length=1,
                                 max_length=constants.TRACKING_NUMBER_MAX_LENGTH)
    return_time: Optional[datetime] = Field(None, alias="returnTime")

    @field_validator("return_time", mode="before")
    @classmethod
    def _parse_time(cls, v: Any) -> Optional[datetime]:
        return _external_time(v)


class OmsExchangeAddress(OmsModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    address: Optional[str] = None
    zip_code: Optional[str] = Field(None, alias="zipCode")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class OmsCaseEvent(OmsModel):
    reference_number: str = Field(
        ..., alias="aftersalesNo", min_length=1, max_length=constants.REFERENCE_NUMBER_MAX_LENGTH
    )

    @field_validator("reference_number", mode="before")
    @classmethod
    def _reference_to_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class _AuditFields(OmsCaseEvent):
    audit_time: Optional[datetime] = Field(None, alias="auditTime")
    auditor: Optional[str] = None
    audit_remark: Optional[str] = Field(None, alias="auditRemark")
    approved_amount_cents: Optional[int] = Field(None, alias="approvedAmount")
    return_logistics: Optional[OmsReturnLogistics] = Field(None, alias="returnLogistics")
    exchange_address: Optional[OmsExchangeAddress] = Field(None, alias="exchangeAddress")

    @field_validator("approved_amount_cents", mode="before")
    @classmethod
    def _approved_to_cents(cls, v: Any) -> Optional[int]:
        return _amount_to_cents(v)

    @field_validator("audit_time", mode="before")
    @classmethod
    def _parse_audit_time(cls, v: Any) -> Optional[datetime]:
        return _external_time(v)


class OmsCreateEvent(_AuditFields):
    aftersales_type: str = Field(..., alias="aftersalesType", min_length=1)
    order_number: str = Field(..., alias="orderNo", min_length=1)
    reason: Optional[str] = None
    status: str = "pending"
    description: Optional[str] = Field(None, max_length=constants.DESCRIPTION_MAX_LENGTH)
    proof_images: list[str] = Field(default_factory=list, alias="proofImages")
    refund_amount_cents: Optional[int] = Field(None, alias="refundAmount")
    applicant_name: Optional[str] = Field(None, alias="applicantName")
    applicant_phone: Optional[str] = Field(None, alias="applicantPhone")
    apply_time: Optional[datetime] = Field(None, alias="applyTime")
    products: list[OmsProduct] = Field(default_factory=list)
    service_note: Optional[str] = Field(None, alias="serviceNote")

    @field_validator("refund_amount_cents", mode="before")
    @classmethod
    def _refund_to_cents(cls, v: Any) -> Optional[int]:
        return _amount_to_cents(v)

    @field_validator("apply_time", mode="before")
    @classmethod
    def _parse_apply_time(cls, v: Any) -> Optional[datetime]:
        return _external_time(v)

    @field_validator("proof_images", mode="before")
    @classmethod
    def _images(cls, v: Any) -> list[str]:
        if v is None:
            return []
        return [item for item in v if isinstance(item, str)]


class OmsStatusEvent(_AuditFields):
    status: str = Field(..., min_length=1)
    process_time: Optional[datetime] = Field(None, alias="processTime")
    completed_time: Optional[datetime] = Field(None, alias="completedTime")

    @field_validator("process_time", "completed_time", mode="before")
    @classmethod
    def _parse_times(cls, v: Any) -> Optional[datetime]:
        return _external_time(v)


class OmsInfoEvent(OmsCaseEvent):
    description: Optional[str] = Field(None, max_length=constants.DESCRIPTION_MAX_LENGTH)
    proof_images: Optional[list[str]] = Field(None, alias="proofImages")
    refund_amount_cents: Optional[int] = Field(None, alias="refundAmount")
    applicant_name: Optional[str] = Field(None, alias="applicantName")
    applicant_phone: Optional[str] = Field(None, alias="applicantPhone")
    service_note: Optional[str] = Field(None, alias="serviceNote")
    products: Optional[list[OmsProduct]] = None
    modify_reason: Optional[str] = Field(None, alias="modifyReason")

    @field_validator("refund_amount_cents", mode="before")
    @classmethod
    def _refund_to_cents(cls, v: Any) -> Optional[int]:
        return _amount_to_cents(v)

    @field_validator("proof_images", mode="before")
    @classmethod
    def _images(cls, v: Any) -> Optional[list[str]]:
        if v is None:
            return []
        return [item for item in v if isinstance(item, str)]


def parse_event(model: type[ModelT], payload: Any) -> ModelT:
    """Validate payload against model, raising the core ValidationError on failure."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        violations = [
            Violation(".".join(str(part) for part in err["loc"]) or "payload", err["msg"])
            for err in e.errors()
        ]
        raise ValidationError(violations) from e
