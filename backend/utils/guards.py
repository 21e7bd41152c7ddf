from fastapi import HTTPException
from bson import ObjectId

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value: str, name: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


# -------------------------------
# Ownership Guard
# -------------------------------

def assert_owner(doc: dict | None, user: dict, *, field: str = "seller_id", name: str = "Resource"):
    """404 for missing or foreign documents so foreign ids look the same as missing ones."""
    if not doc:
        raise HTTPException(status_code=404, detail=f"{name} not found")
    if doc.get(field) != user["_id"]:
        raise HTTPException(status_code=404, detail=f"{name} not found")
