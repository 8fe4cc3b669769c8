"""Linode API list filters.

The API accepts a JSON object in the ``X-Filter`` header. Only the most
specific of ``id``, ``label`` and ``tags`` is sent, together with any
additional fields the caller supplies.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Filter:
    id: int | None = None
    label: str | None = None
    tags: tuple[str, ...] = ()
    additional: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = dict(self.additional)
        if self.id is not None:
            result["id"] = self.id
        elif self.label:
            result["label"] = self.label
        elif self.tags:
            result["tags"] = ",".join(self.tags)
        return result

    def to_json(self) -> str:
        """Serialize the filter, or return an empty string when it matches everything."""
        data = self.to_dict()
        if not data:
            return ""
        return json.dumps(data, sort_keys=True)
