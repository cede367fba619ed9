"""Read-only catalog of models offered by the proxy."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from itertools import groupby
from typing import Any


@dataclass(frozen=True)
class ModelInfo:
    """One selectable model."""

    id: str
    name: str
    group: str = ""
    icon: str = ""
    desc: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ModelInfo:
        model_id = str(payload["id"]).strip()
        return cls(
            id=model_id,
            name=str(payload.get("name") or model_id),
            group=str(payload.get("group", "")),
            icon=str(payload.get("icon", "")),
            desc=str(payload.get("desc", "")),
        )


class ModelCatalog:
    """Ordered, id-unique collection of :class:`ModelInfo`."""

    def __init__(self, models: Iterable[ModelInfo] = ()) -> None:
        self._models: dict[str, ModelInfo] = {}
        for model in models:
            self._models.setdefault(model.id, model)

    @classmethod
    def from_config(cls, entries: Iterable[dict[str, Any]]) -> ModelCatalog:
        return cls(ModelInfo.from_dict(entry) for entry in entries)

    def __iter__(self) -> Iterator[ModelInfo]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def get(self, model_id: str) -> ModelInfo | None:
        return self._models.get(model_id)

    def sorted_by_group(self) -> list[ModelInfo]:
        """Models ordered by group name; order within a group is preserved."""
        return sorted(self._models.values(), key=lambda model: model.group)

    def grouped(self) -> dict[str, list[ModelInfo]]:
        return {
            group: list(items)
            for group, items in groupby(self.sorted_by_group(), key=lambda m: m.group)
        }
