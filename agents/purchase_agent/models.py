import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from agents.purchase_agent.errors import RequestLoadError


BIRTH_PATTERN = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}$")

# Form field -> purchase request field.
FORM_FIELD_MAP = {
    "ticketUrl": "url",
    "email": "email",
    "password": "password",
    "quantity": "quantity",
    "seatType": "seat",
    "paymentMethod": "payment",
    "deliveryMethod": "delivery",
    "name": "name",
    "phone": "phone",
    "birthdate": "birth",
    "saleStartTime": "saleStartTime",
}


class PurchaseRequest(BaseModel):
    """Immutable input for one purchase run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    url: str
    email: str
    password: str
    quantity: int = Field(ge=1)
    seat: str
    payment: str
    delivery: str
    name: str
    phone: str
    birth: str
    sale_start_time: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("saleStartTime", "saleTime", "sale_start_time"),
        serialization_alias="saleStartTime",
    )

    @field_validator("url", "email", "password", "seat", "payment", "delivery", "name")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not str(value).strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("phone", mode="before")
    @classmethod
    def _phone_as_text(cls, value: Any) -> str:
        if value is None:
            raise ValueError("phone is required")
        text = str(value).strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("birth")
    @classmethod
    def _check_birth(cls, value: str) -> str:
        raw = str(value).strip()
        if not BIRTH_PATTERN.match(raw):
            raise ValueError("birth must use YYYY-MM-DD")
        return raw

    @field_validator("sale_start_time", mode="before")
    @classmethod
    def _blank_sale_time(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            return value.replace("Z", "+00:00")
        return value

    def birth_parts(self) -> Tuple[str, str, str]:
        """Return year, month and day as the remote form expects them (no zero padding)."""
        year, month, day = self.birth.split("-")
        return year, month.lstrip("0") or "0", day.lstrip("0") or "0"

    def to_record(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True)
        if self.sale_start_time is not None:
            data["saleStartTime"] = self.sale_start_time.isoformat()
        return data

    @classmethod
    def from_form_data(cls, form_data: Union[str, Dict[str, Any]]) -> "PurchaseRequest":
        if isinstance(form_data, str):
            try:
                form_data = json.loads(form_data)
            except ValueError as exc:
                raise RequestLoadError(f"Form data is not valid JSON: {exc}") from exc
        if not isinstance(form_data, dict):
            raise RequestLoadError("Form data must be a JSON object")

        mapped: Dict[str, Any] = {}
        for form_key, field_name in FORM_FIELD_MAP.items():
            if form_key in form_data:
                mapped[field_name] = form_data[form_key]

        try:
            mapped["quantity"] = int(str(mapped.get("quantity", "")).strip())
        except ValueError:
            mapped["quantity"] = 1
        if mapped["quantity"] < 1:
            mapped["quantity"] = 1
        if mapped.get("phone") is not None:
            mapped["phone"] = str(mapped["phone"]).replace("-", "")

        try:
            return cls.model_validate(mapped)
        except ValidationError as exc:
            raise RequestLoadError(f"Form data is incomplete: {_summarize_validation(exc)}") from exc


def _summarize_validation(exc: ValidationError) -> str:
    parts = []
    for item in exc.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "record"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_purchase_request(raw: Union[str, bytes]) -> PurchaseRequest:
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise RequestLoadError(f"Purchase request is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise RequestLoadError("Purchase request must be a JSON object")
    try:
        return PurchaseRequest.model_validate(data)
    except ValidationError as exc:
        raise RequestLoadError(f"Purchase request is invalid: {_summarize_validation(exc)}") from exc


def load_purchase_request(path: Union[str, Path]) -> PurchaseRequest:
    """Read and validate a purchase request document; any problem is a RequestLoadError."""
    request_path = Path(path)
    if not request_path.exists():
        raise RequestLoadError(f"Purchase request file not found: {request_path}")
    try:
        raw = request_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RequestLoadError(f"Could not read purchase request {request_path}: {exc}") from exc
    return parse_purchase_request(raw)


def write_purchase_request(request: PurchaseRequest, path: Union[str, Path]) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(request.to_record(), ensure_ascii=False, indent=2), encoding="utf-8")
    return out_path
