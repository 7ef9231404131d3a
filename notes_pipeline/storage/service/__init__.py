from .storage import FileObjectStore, ObjectStore, StoredObject, get_storage

__all__ = ["FileObjectStore", "ObjectStore", "StoredObject", "get_storage"]
