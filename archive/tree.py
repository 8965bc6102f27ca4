"""Operations over the in-memory folder/file document.

Each function mutates the document it is given and returns the affected
record(s). Callers are expected to hold a ``MetadataStore.transaction()`` so
the change is written back afterwards.

References between records are not validated: a ``parentId`` or ``folderId``
may point at a folder that does not exist. Such items are kept and simply
have no visible parent.
"""

import os
from typing import Any, Dict, List, Optional, Set, Tuple

from .errors import NotFoundError, ValidationError
from .storage import generate_id

UNSET: Any = object()

DEFAULT_FILE_NAME = "Unnamed"


def file_type_for(name: str) -> Optional[str]:
    """Return the lowercase extension of *name* without the dot, or None."""

    extension = os.path.splitext(name or "")[1]
    return extension[1:].lower() or None


def _reference(value: Any) -> Optional[str]:
    # Anything but a non-empty string (null, "", false, 0) means "root".
    if isinstance(value, str) and value:
        return value
    return None


def find_folder(document: Dict[str, List[dict]], folder_id: str) -> Optional[dict]:
    for folder in document["folders"]:
        if folder.get("id") == folder_id:
            return folder
    return None


def find_file(document: Dict[str, List[dict]], file_id: str) -> Optional[dict]:
    for record in document["files"]:
        if record.get("id") == file_id:
            return record
    return None


def create_folder(
    document: Dict[str, List[dict]], name: Any, parent_id: Any = None
) -> dict:
    cleaned = str(name).strip() if name is not None else ""
    if not cleaned:
        raise ValidationError("Name required")
    folder = {"id": generate_id(), "name": cleaned, "parentId": _reference(parent_id)}
    document["folders"].append(folder)
    return folder


def add_file(
    document: Dict[str, List[dict]],
    name: Optional[str],
    size: int,
    folder_id: Any = None,
) -> dict:
    display_name = (name or "").strip() or DEFAULT_FILE_NAME
    record = {
        "id": generate_id(),
        "name": display_name,
        "size": size,
        "folderId": _reference(folder_id),
        "type": file_type_for(display_name),
    }
    document["files"].append(record)
    return record


def _renamed(current: str, name: Any) -> str:
    # A blank new name keeps the current one instead of failing the update.
    cleaned = str(name).strip() if name is not None else ""
    return cleaned or current


def update_folder(
    document: Dict[str, List[dict]],
    folder_id: str,
    name: Any = UNSET,
    parent_id: Any = UNSET,
) -> dict:
    folder = find_folder(document, folder_id)
    if folder is None:
        raise NotFoundError("Folder not found")
    if name is not UNSET:
        folder["name"] = _renamed(folder.get("name", ""), name)
    if parent_id is not UNSET:
        folder["parentId"] = _reference(parent_id)
    return folder


def update_file(
    document: Dict[str, List[dict]],
    file_id: str,
    name: Any = UNSET,
    folder_id: Any = UNSET,
) -> dict:
    record = find_file(document, file_id)
    if record is None:
        raise NotFoundError("File not found")
    if name is not UNSET:
        record["name"] = _renamed(record.get("name", ""), name)
        record["type"] = file_type_for(record["name"])
    if folder_id is not UNSET:
        record["folderId"] = _reference(folder_id)
    return record


def collect_descendant_folder_ids(
    document: Dict[str, List[dict]], root_id: str
) -> Set[str]:
    """Return *root_id* and the ids of every folder nested beneath it.

    The walk is iterative and remembers what it has seen, so a ``parentId``
    cycle cannot make it loop forever.
    """

    children: Dict[Optional[str], List[str]] = {}
    for folder in document["folders"]:
        children.setdefault(folder.get("parentId"), []).append(folder.get("id"))

    collected = {root_id}
    pending = [root_id]
    while pending:
        current = pending.pop()
        for child_id in children.get(current, []):
            if child_id in collected:
                continue
            collected.add(child_id)
            pending.append(child_id)
    return collected


def delete_folder(
    document: Dict[str, List[dict]], folder_id: str
) -> Tuple[Set[str], List[dict]]:
    """Drop a folder, every folder nested in it and all of their files.

    Returns the removed folder ids and file records. Blob content is left to
    the caller, to be removed once the smaller document has been saved.
    """

    if find_folder(document, folder_id) is None:
        raise NotFoundError("Folder not found")

    folder_ids = collect_descendant_folder_ids(document, folder_id)
    removed_files = [f for f in document["files"] if f.get("folderId") in folder_ids]

    document["files"] = [
        f for f in document["files"] if f.get("folderId") not in folder_ids
    ]
    document["folders"] = [
        f for f in document["folders"] if f.get("id") not in folder_ids
    ]
    return folder_ids, removed_files


def delete_file(document: Dict[str, List[dict]], file_id: str) -> dict:
    record = find_file(document, file_id)
    if record is None:
        raise NotFoundError("File not found")
    document["files"] = [f for f in document["files"] if f.get("id") != file_id]
    return record
