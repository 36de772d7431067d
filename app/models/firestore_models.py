"""
Pydantic base model and the Firestore client accessor.
Thin wrapper to map Firestore documents <-> Pydantic models.
"""
from typing import Any, Dict, Optional, Type, TypeVar
from pydantic import BaseModel, ConfigDict, Field
from firebase_admin import firestore_async

T = TypeVar("T", bound="FirestoreModel")


class FirestoreModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True, extra="ignore")

    id: Optional[str] = Field(None, alias="id")

    @classmethod
    def from_doc(cls: Type[T], doc: Any) -> Optional[T]:
        if doc is None:
            return None
        if hasattr(doc, "to_dict"):
            if not getattr(doc, "exists", True):
                return None
            data = doc.to_dict() or {}
            data["id"] = getattr(doc, "id", None)
        elif isinstance(doc, dict):
            data = dict(doc)
        else:
            return None
        return cls.model_validate(data)

    def to_dict(self) -> Dict[str, Any]:
        d = self.model_dump(by_alias=True, exclude_none=True)
        # remove `id` when writing into Firestore (use document id instead)
        d.pop("id", None)
        return d


def get_client():
    """Async Firestore client of the default Firebase app"""
    return firestore_async.client()


__all__ = ["FirestoreModel", "get_client"]
