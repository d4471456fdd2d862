"""Helpers for API Platform (Hydra) collection responses."""

from typing import Any, List


def extract_hydra_collection(response: Any) -> List[Any]:
    if isinstance(response, dict):
        members = response.get("hydra:member")
        if isinstance(members, list):
            return members
    return []


def get_hydra_total_items(response: Any) -> int:
    if isinstance(response, dict):
        total = response.get("hydra:totalItems")
        if isinstance(total, int):
            return total
    return 0
