"""
Reference store - read-only lookup of enrolled face references
"""
import io
import logging
from pathlib import Path
from typing import Iterable, Optional, Protocol

import numpy as np
from werkzeug.utils import secure_filename

from unlock_core.inference.verifier import ReferenceDescriptor


class ReferenceUnavailable(LookupError):
    """Raised when no enrolled reference exists for an identity."""


class ReferenceStore(Protocol):
    def fetch(self, identity: str) -> ReferenceDescriptor:
        ...


class DirectoryReferenceStore:
    """Reads ``<root>/<identity>.<ext>`` as an opaque reference blob.

    The blob is either an encoded face image (DeepFace backend) or a raw
    float32 embedding (embedding backend). ``.npy`` files are decoded to
    their float32 payload; every other extension is returned as stored.
    """

    DEFAULT_EXTENSIONS = ('.npy', '.emb', '.bin', '.jpg', '.jpeg', '.png')

    def __init__(
        self,
        root,
        extensions: Optional[Iterable[str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.root = Path(root)
        self.extensions = tuple(extensions or self.DEFAULT_EXTENSIONS)
        self.logger = logger or logging.getLogger(__name__)

    def _candidates(self, identity: str):
        safe = secure_filename(identity or '')
        if not safe or safe != identity:
            raise ReferenceUnavailable(f"Invalid identity '{identity}'")
        for ext in self.extensions:
            yield self.root / f"{safe}{ext}"

    @staticmethod
    def _decode_npy(raw: bytes) -> bytes:
        arr = np.load(io.BytesIO(raw), allow_pickle=False)
        if arr.size == 0:
            raise ValueError("empty embedding array")
        return np.asarray(arr, dtype=np.float32).reshape(-1).tobytes()

    def fetch(self, identity: str) -> ReferenceDescriptor:
        for path in self._candidates(identity):
            if path.is_file():
                blob = path.read_bytes()
                if not blob:
                    self.logger.warning(f"[Reference] Empty reference file {path}")
                    continue
                if path.suffix.lower() == '.npy':
                    try:
                        blob = self._decode_npy(blob)
                    except (ValueError, OSError, EOFError) as e:
                        self.logger.warning(f"[Reference] Unreadable embedding file {path}: {e}")
                        continue
                self.logger.debug(f"[Reference] Loaded {path.name} ({len(blob)} bytes)")
                return ReferenceDescriptor(identity=identity, blob=blob)
        raise ReferenceUnavailable(f"No reference enrolled for '{identity}'")
