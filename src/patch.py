"""
Merge Patch - JSON merge patch (RFC 7386) helpers.

Patches are computed as the delta between a snapshot and a locally mutated
copy, then sent to the store together with the snapshot's resource version.
"""

import copy
from typing import Any, Dict


def create_merge_patch(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compute the merge patch that turns ``before`` into ``after``.

    Keys missing from ``after`` are emitted as ``None`` (delete). Nested
    dicts are diffed recursively; any other value, lists included, is
    replaced wholesale when it differs.

    Args:
        before: The original document
        after: The desired document

    Returns:
        The merge patch. An empty dict means the documents are equal.
    """
    patch: Dict[str, Any] = {}

    for key in before:
        if key not in after:
            patch[key] = None

    for key, value in after.items():
        if key not in before:
            patch[key] = copy.deepcopy(value)
            continue
        old = before[key]
        if isinstance(old, dict) and isinstance(value, dict):
            nested = create_merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif old != value:
            patch[key] = copy.deepcopy(value)

    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """
    Apply a merge patch to a document.

    Args:
        target: The document to patch (not modified)
        patch: The merge patch

    Returns:
        The patched document.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result
