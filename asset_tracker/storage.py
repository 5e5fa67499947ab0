"""Local filesystem object store for asset images and generated code images.

The core only keeps the opaque references returned here; anything that can
save, open and delete bytes by reference can stand in for this class.
"""
import logging
import os
import uuid

from flask import current_app
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)


class LocalObjectStore:

    def __init__(self, root):
        self.root = os.path.abspath(root)

    def _path(self, ref):
        path = os.path.abspath(os.path.join(self.root, ref))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f"Invalid object reference: {ref}")
        return path

    def save(self, data, suffix='.bin', folder='misc'):
        ref = f"{folder}/{uuid.uuid4().hex}{suffix}"
        path = self._path(ref)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(data)
        return ref

    def save_upload(self, file_storage, folder='images'):
        """Store a werkzeug FileStorage under a unique, sanitized name."""
        filename = secure_filename(file_storage.filename or '') or 'upload'
        ref = f"{folder}/{uuid.uuid4().hex[:12]}-{filename}"
        path = self._path(ref)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_storage.save(path)
        return ref

    def open(self, ref):
        return open(self._path(ref), 'rb')

    def exists(self, ref):
        return os.path.exists(self._path(ref))

    def delete(self, ref):
        if not ref:
            return
        try:
            os.remove(self._path(ref))
        except FileNotFoundError:
            logger.debug("Object %s already gone", ref)


def get_object_store():
    return current_app.extensions['object_store']


def discard_objects(*refs):
    """Delete stored objects after the owning record is committed.

    Cleanup failures leave an orphaned file behind, which is logged but does
    not undo the committed change.
    """
    store = get_object_store()
    for ref in refs:
        if not ref:
            continue
        try:
            store.delete(ref)
        except (OSError, ValueError):
            logger.warning("Could not delete stored object %s", ref, exc_info=True)
