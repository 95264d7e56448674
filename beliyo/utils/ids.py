from typing import Any, Dict, List

from bson import ObjectId


def id_candidates(value: str) -> List[Any]:
    # rows may be keyed by ObjectId or by an imported string id
    candidates: List[Any] = [value]
    if ObjectId.is_valid(value):
        candidates.append(ObjectId(value))
    return candidates


def id_filter(value: str) -> Dict[str, Any]:
    return {"_id": {"$in": id_candidates(value)}}


def normalize_id(doc: Dict[str, Any] | None) -> Dict[str, Any] | None:
    if doc is not None and "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc
