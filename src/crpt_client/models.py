from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Payload(BaseModel):
    # Accept camelCase keys from upstream JSON; always emit snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Product(_Payload):
    certificate_document: str | None = None
    certificate_document_date: str | None = None
    certificate_document_number: str | None = None
    owner_inn: str | None = None
    producer_inn: str | None = None
    production_date: str | None = None
    tnved_code: str | None = None
    uit_code: str | None = None
    uitu_code: str | None = None


class Document(_Payload):
    description: str | None = None
    doc_id: str | None = None
    doc_status: str | None = None
    doc_type: str | None = None
    import_request: bool = False
    owner_inn: str | None = None
    participant_inn: str | None = None
    producer_inn: str | None = None
    production_date: str | None = None
    production_type: str | None = None
    products: list[Product] = Field(default_factory=list)
    reg_date: str | None = None
    reg_number: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=False)


def parse_document(data: dict[str, Any]) -> Document:
    return Document.model_validate(data)


def load_document(path: Path) -> Document:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return parse_document(data)
