"""Engine backend that runs the model artifact on a local Ollama server.

``initialize`` registers the downloaded artifact with the server as a
content-addressed blob (skipped when the tag already exists), and
``run_inference`` streams NDJSON tokens from ``/api/generate``. Session
resets are cooperative: each handle carries an epoch counter and a stream
started under an older epoch stops delivering.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
import threading
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from pocketlm.core.protocols import ImageInput, PartialCallback

logger = logging.getLogger(__name__)

_UPLOAD_BLOCK_SIZE = 1 << 20

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class OllamaError(Exception):
    """Base exception for Ollama backend errors."""


class OllamaConnectionError(OllamaError):
    """Ollama server is unreachable."""


class OllamaTimeoutError(OllamaError):
    """Request exceeded configured timeout."""


class OllamaModelNotFoundError(OllamaError):
    """Requested model is not registered on the server.

    Attributes:
        model: The model that was requested.
    """

    def __init__(self, model: str) -> None:
        self.model = model
        super().__init__(f"Model {model!r} not found on the Ollama server")


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class OllamaSession:
    """Engine handle for one registered model.

    Args:
        model: Ollama model tag.
        path: Artifact the tag was created from.
        vision_enabled: Whether images are forwarded to the model.
        epoch: Incremented on every session reset.
        disposed: Set once the model has been unloaded.
    """

    model: str
    path: str
    vision_enabled: bool
    epoch: int = 0
    disposed: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def model_tag_for(artifact: Path) -> str:
    """Derive an Ollama tag from an artifact file name.

    Examples:
        ``gemma-3-4b-it-q4_0.gguf`` → ``gemma-3-4b-it-q4_0:latest``
        ``My Model.GGUF``           → ``my-model:latest``
    """
    name = re.sub(r"[^a-z0-9._-]+", "-", artifact.stem.lower()).strip("-._")
    return f"{name or 'model'}:latest"


def _file_digest(path: Path) -> str:
    """Compute SHA-256 hex digest of file content."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(_UPLOAD_BLOCK_SIZE), b""):
            h.update(block)
    return h.hexdigest()


def _iter_file(path: Path) -> Iterator[bytes]:
    with open(path, "rb") as f:
        yield from iter(lambda: f.read(_UPLOAD_BLOCK_SIZE), b"")


def _encode_image(image: ImageInput) -> str:
    data = image.read_bytes() if isinstance(image, Path) else image
    return base64.b64encode(data).decode("ascii")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class OllamaEngine:
    """Synchronous engine over the Ollama REST API.

    Satisfies the :class:`~pocketlm.core.protocols.Engine` protocol. All
    methods block and are meant to run on worker threads.

    Args:
        host: Ollama server base URL.
        timeout: Per-request read timeout in seconds.
        model_tag: Fixed tag to use; derived from the artifact name when empty.
        client: Pre-configured client (tests inject a mock transport here).
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        timeout: float = 300.0,
        model_tag: str = "",
        client: httpx.Client | None = None,
    ) -> None:
        self._host = host.rstrip("/")
        self._model_tag = model_tag
        self._client = client or httpx.Client(
            base_url=self._host,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )
        self._lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    # -- Server queries --------------------------------------------------------

    def health_check(self) -> bool:
        """Check if the Ollama server is reachable."""
        try:
            resp = self._client.get("/")
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    def list_models(self) -> list[str]:
        """List the tags of all models registered on the server."""
        try:
            resp = self._client.get("/api/tags")
            resp.raise_for_status()
        except httpx.ConnectError as exc:
            raise OllamaConnectionError(f"Cannot connect to {self._host}") from exc
        except httpx.TimeoutException as exc:
            raise OllamaTimeoutError("Timed out listing models") from exc
        return [m["name"] for m in resp.json().get("models", [])]

    def is_model_available(self, model: str) -> bool:
        """Check if a tag is registered, trying with :latest suffix as fallback."""
        names = set(self.list_models())
        if model in names:
            return True
        return ":" not in model and f"{model}:latest" in names

    # -- Engine protocol -------------------------------------------------------

    def initialize(self, path: str, vision_enabled: bool) -> OllamaSession:
        """Make the artifact at ``path`` available as an Ollama model.

        Raises:
            FileNotFoundError: The artifact does not exist.
            OllamaConnectionError: Server unreachable.
            OllamaError: Upload or model creation rejected.
        """
        artifact = Path(path)
        if not artifact.is_file():
            raise FileNotFoundError(f"Model file not found: {path}")
        if not self.health_check():
            raise OllamaConnectionError(f"Cannot connect to {self._host}")

        tag = self._model_tag or model_tag_for(artifact)
        if self.is_model_available(tag):
            logger.debug("Model %s already registered", tag)
        else:
            self._register(artifact, tag)
        return OllamaSession(model=tag, path=str(artifact), vision_enabled=vision_enabled)

    def reset_session(self, handle: OllamaSession, vision_enabled: bool) -> None:
        """Invalidate any in-flight stream and switch the vision flag."""
        with self._lock:
            handle.epoch += 1
            handle.vision_enabled = vision_enabled

    def run_inference(
        self,
        handle: OllamaSession,
        prompt: str,
        images: Sequence[ImageInput],
        on_partial: PartialCallback,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Stream a completion, delivering tokens through ``on_partial``.

        Exactly one ``is_final=True`` call ends an uninterrupted stream. An
        interrupted stream (session reset or ``cancel_event``) returns without
        a final call.

        Raises:
            OllamaError: Disposed handle, images outside vision mode, or a
                server-side failure.
        """
        if handle.disposed:
            raise OllamaError("Engine session has been disposed")
        epoch = handle.epoch

        payload: dict[str, object] = {"model": handle.model, "prompt": prompt, "stream": True}
        if images:
            if not handle.vision_enabled:
                raise OllamaError("Images require a vision-enabled session")
            payload["images"] = [_encode_image(image) for image in images]

        def interrupted() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return handle.epoch != epoch

        if interrupted():
            logger.debug("Generation interrupted before request for %s", handle.model)
            return

        try:
            with self._client.stream("POST", "/api/generate", json=payload) as resp:
                if resp.status_code == 404:
                    raise OllamaModelNotFoundError(handle.model)
                if resp.status_code != 200:
                    raise OllamaError(f"Ollama returned HTTP {resp.status_code}")

                for line in resp.iter_lines():
                    if interrupted():
                        logger.debug("Stream for %s interrupted by session reset", handle.model)
                        return
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue

                    if "error" in data:
                        raise OllamaError(str(data["error"]))
                    token = data.get("response", "")
                    if data.get("done", False):
                        on_partial(token, True)
                        return
                    if token:
                        on_partial(token, False)

        except httpx.ConnectError as exc:
            raise OllamaConnectionError(f"Cannot connect to {self._host}") from exc
        except httpx.TimeoutException as exc:
            raise OllamaTimeoutError("Stream timed out") from exc

        if not interrupted():
            on_partial("", True)

    def dispose(self, handle: OllamaSession) -> None:
        """Unload the model from server memory via keep_alive=0. Idempotent."""
        with self._lock:
            if handle.disposed:
                return
            handle.disposed = True
            handle.epoch += 1
        try:
            self._client.post("/api/generate", json={"model": handle.model, "keep_alive": 0})
        except httpx.HTTPError as exc:
            logger.warning("Could not unload %s: %s", handle.model, exc)

    # -- Registration ----------------------------------------------------------

    def _register(self, artifact: Path, tag: str) -> None:
        """Upload the artifact as a blob (if new) and create ``tag`` from it."""
        digest = f"sha256:{_file_digest(artifact)}"
        try:
            resp = self._client.head(f"/api/blobs/{digest}")
            if resp.status_code != 200:
                logger.info("Uploading %s to Ollama", artifact.name)
                resp = self._client.post(f"/api/blobs/{digest}", content=_iter_file(artifact))
                if resp.status_code not in (200, 201):
                    raise OllamaError(
                        f"Failed to upload {artifact.name}: HTTP {resp.status_code}"
                    )

            resp = self._client.post(
                "/api/create",
                json={"model": tag, "files": {artifact.name: digest}, "stream": False},
            )
        except httpx.ConnectError as exc:
            raise OllamaConnectionError(f"Cannot connect to {self._host}") from exc
        except httpx.TimeoutException as exc:
            raise OllamaTimeoutError(f"Timed out registering {tag}") from exc

        if resp.status_code != 200:
            raise OllamaError(f"Failed to create model {tag}: HTTP {resp.status_code}")
        logger.info("Registered %s as %s", artifact.name, tag)
