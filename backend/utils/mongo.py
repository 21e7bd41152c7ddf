from datetime import datetime

from bson import ObjectId


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict) -> dict:
    if not doc:
        return doc

    out = {k: _serialize_value(v) for k, v in doc.items()}
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]
