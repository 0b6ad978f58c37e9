"""
Descriptive metadata schema.

Typed, versioned mirror of an asset's off-chain metadata document. Documents
are validated on read; unknown schema versions are rejected rather than
guessed at. Ownership traits here are informational only: the ledger is
authoritative for who holds an asset.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SUPPORTED_VERSIONS = {1}

TRAIT_CURRENT_OWNER = "Current Owner"
TRAIT_MARKET_STATUS = "Market Status"
TRAIT_PROVENANCE = "Provenance"
TRAIT_PRICE = "Price"

# Fields the ledger, not the document, is authoritative for
LEDGER_OWNED_TRAITS = {TRAIT_CURRENT_OWNER}


class Trait(BaseModel):
    """Named attribute (NFT-style trait_type/value pair)."""
    trait_type: str = Field(min_length=1)
    value: Union[str, int, float, bool, None] = None


class DescriptiveMetadata(BaseModel):
    """Versioned descriptive metadata for one asset."""
    schema_version: int = Field(default=SCHEMA_VERSION, description="Document schema version")
    asset_id: str = Field(min_length=1, description="Asset mint address")
    title: str = Field(default="", description="Display title")
    description: str = Field(default="")
    image: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0, description="Declared price")
    attributes: List[Trait] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    uri: Optional[str] = None

    @field_validator("schema_version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        if v not in SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported metadata schema version {v}; supported: {sorted(SUPPORTED_VERSIONS)}")
        return v

    @field_validator("updated_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def trait(self, name: str) -> Any:
        for attr in self.attributes:
            if attr.trait_type == name:
                return attr.value
        return None

    def with_trait(self, name: str, value: Any) -> "DescriptiveMetadata":
        """Copy with ``name`` set (replacing any existing value) and a fresh timestamp."""
        attrs = [a for a in self.attributes if a.trait_type != name]
        attrs.append(Trait(trait_type=name, value=value))
        return self.model_copy(update={"attributes": attrs, "updated_at": datetime.now(timezone.utc)})

    @property
    def market_status(self) -> Optional[str]:
        value = self.trait(TRAIT_MARKET_STATUS)
        return str(value) if value is not None else None

    def descriptive_fields(self) -> Dict[str, Any]:
        """Fields the document is authoritative for."""
        return {
            "title": self.title,
            "description": self.description,
            "image": self.image,
            "price": self.price,
            "traits": {a.trait_type: a.value for a in self.attributes
                       if a.trait_type not in LEDGER_OWNED_TRAITS},
        }


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, (int, float)):
        # Millisecond epoch values are common in stored documents
        seconds = raw / 1000.0 if raw > 1e11 else float(raw)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(raw).replace("Z", "+00:00")
    return datetime.fromisoformat(text)


def from_document(document: Dict[str, Any], asset_id: Optional[str] = None,
                  uri: Optional[str] = None) -> DescriptiveMetadata:
    """
    Validate a stored or pinned document into DescriptiveMetadata.

    Accepts both the native layout and the common NFT JSON layout
    (``name``/``attributes``/``updatedAt``). Documents without a schema
    version are treated as version 1.

    Raises:
        ValueError: the document fails validation (pydantic ValidationError
        is a ValueError subclass)
    """
    if not isinstance(document, dict):
        raise ValueError(f"Metadata document must be an object, got {type(document).__name__}")

    data = dict(document)
    data.setdefault("schema_version", data.pop("schemaVersion", SCHEMA_VERSION))
    if "title" not in data and "name" in data:
        data["title"] = data.pop("name")
    data.setdefault("asset_id", asset_id or data.pop("mint", None) or data.pop("mintAddress", None))
    if "updated_at" not in data:
        stamp = None
        for key in ("updatedAt", "timestamp", "createdAt"):
            if data.get(key) is not None:
                stamp = _parse_timestamp(data[key])
                break
        if stamp is not None:
            data["updated_at"] = stamp
    else:
        data["updated_at"] = _parse_timestamp(data["updated_at"])
    if uri and not data.get("uri"):
        data["uri"] = uri
    if data.get("price") is None:
        trait_price = next((a.get("value") for a in data.get("attributes", [])
                            if isinstance(a, dict) and a.get("trait_type") == TRAIT_PRICE), None)
        if trait_price not in (None, ""):
            data["price"] = float(trait_price)

    known = set(DescriptiveMetadata.model_fields)
    return DescriptiveMetadata.model_validate({k: v for k, v in data.items() if k in known})


def to_document(metadata: DescriptiveMetadata) -> Dict[str, Any]:
    """Serialize for the record store or content store."""
    doc = metadata.model_dump(mode="json")
    doc["name"] = metadata.title
    return doc


def latest_by_asset(records: Iterable[DescriptiveMetadata]) -> Dict[str, DescriptiveMetadata]:
    """Keep the most recently timestamped record per asset id."""
    latest: Dict[str, DescriptiveMetadata] = {}
    for record in records:
        current = latest.get(record.asset_id)
        if current is None or record.updated_at > current.updated_at:
            latest[record.asset_id] = record
    return latest
