from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime
import base64
import binascii
import re

from ..models.contract_models import ContractStatus

DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


def decode_signature_image(value: str) -> bytes:
    """Raw image bytes from a base64 string, with or without a data-URL prefix"""
    raw = DATA_URL_PREFIX.sub("", value.strip())
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Signature image must be base64 encoded")


class ContractTemplateCreate(BaseModel):
    template_name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    header_content: str = Field(..., min_length=1)
    body_content: str = Field(..., min_length=1)
    footer_content: str = Field(..., min_length=1)
    is_active: bool = True


class ContractTemplateUpdate(BaseModel):
    template_name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    header_content: Optional[str] = Field(None, min_length=1)
    body_content: Optional[str] = Field(None, min_length=1)
    footer_content: Optional[str] = Field(None, min_length=1)
    is_active: Optional[bool] = None


class ContractTemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    template_name: str
    description: Optional[str] = None
    header_content: str
    body_content: str
    footer_content: str
    is_active: bool
    created_by: int


class ContractCreate(BaseModel):
    order_id: int
    template_id: int
    custom_clauses: Optional[str] = None


class ContractPreview(BaseModel):
    order_id: int
    template_id: int
    content: str


class SignaturePosition(BaseModel):
    position_x: float = Field(..., ge=0, le=100)
    position_y: float = Field(..., ge=0, le=100)


class SignContractRequest(BaseModel):
    """
    Either reuse the signer's active signature or supply a new image.
    Positions are percentages; omitted positions fall back to the
    per-role defaults.
    """

    use_existing_signature: bool = False
    signature_data: Optional[str] = None
    position_x: Optional[float] = Field(None, ge=0, le=100)
    position_y: Optional[float] = Field(None, ge=0, le=100)

    @field_validator("signature_data")
    def valid_image(cls, v):
        if v is not None:
            if not v.strip():
                return None
            decode_signature_image(v)
        return v

    @model_validator(mode="after")
    def signature_source(self):
        if not self.use_existing_signature and not self.signature_data:
            raise ValueError("Provide a new signature or use the existing one")
        return self

    def image_bytes(self) -> Optional[bytes]:
        return decode_signature_image(self.signature_data) if self.signature_data else None


class SignatureCreate(BaseModel):
    signature_data: str

    @field_validator("signature_data")
    def valid_image(cls, v):
        if not v or not v.strip():
            raise ValueError("Signature image is required")
        decode_signature_image(v)
        return v

    def image_bytes(self) -> bytes:
        return decode_signature_image(self.signature_data)


class UserSignatureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    image_url: str
    is_active: bool
    valid_from: datetime
    valid_to: Optional[datetime] = None
    is_used_in_contract: bool = False


class ContractSignatureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contract_id: int
    signature_id: int
    signer_id: int
    signed_at: datetime
    is_valid: bool
    position_x: float
    position_y: float
    verification_note: Optional[str] = None
    image_url: Optional[str] = None


class ContractResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    owner_id: int
    renter_id: int
    template_id: int
    content: str
    custom_clauses: Optional[str] = None
    status: ContractStatus
    signed_at: Optional[datetime] = None
    signatures: List[ContractSignatureResponse] = []


class ContractForOrder(BaseModel):
    """The order's contract if one exists, otherwise the templates to pick from"""

    contract: Optional[ContractResponse] = None
    templates: List[ContractTemplateResponse] = []
    can_sign: bool = False
