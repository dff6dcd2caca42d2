"""Input sanitizing before a request goes upstream."""

from typing import Any


def filter_input(
    items: Any,
    preserve_ids: bool = False,
    preserve_metadata: bool = False,
) -> Any:
    """Drop item references and, unless ids may be forwarded, item ids.

    Item ids only mean something to the upstream when it has already seen
    them under the same cache lineage, so a new lineage sends none. Turn
    metadata is dropped with the ids unless ``preserve_metadata`` is set.
    Non-list input is returned unchanged.
    """
    if not isinstance(items, list):
        return items

    filtered = []
    for item in items:
        if isinstance(item, dict) and item.get("type") == "item_reference":
            continue
        if isinstance(item, dict):
            sanitized = dict(item)
            if not preserve_ids:
                sanitized.pop("id", None)
                if not preserve_metadata:
                    sanitized.pop("metadata", None)
            filtered.append(sanitized)
        else:
            filtered.append(item)
    return filtered
