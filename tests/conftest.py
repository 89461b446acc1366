"""
Shared pytest fixtures: fake ONNX backends, fake HTTP transport, NPY and
image resources on disk, and a Config pointing at them.
"""

import asyncio
import io
import struct
import threading
from types import SimpleNamespace

import numpy as np
import pytest
import requests
from PIL import Image

from config import Config
from edge.cache import TensorCache
from edge.inference import InferenceOrchestrator
from edge.loader import ModelSession
from edge.preprocess import ImagePreprocessor
from edge.transport import ResourceFetcher
from shared.schemas import Sample

# Logits that make "Glaucoma" (index 1) the clear winner
GLAUCOMA_LOGITS = (0.0, 3.0, 1.0, 0.5)


# ============================================================================
# Fake ONNX backend
# ============================================================================

class FakeBackend:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(
        self,
        logits=GLAUCOMA_LOGITS,
        input_name="embedding",
        output_name="logits",
        fail_calls=(),
    ):
        self.logits = logits
        self.input_name = input_name
        self.output_name = output_name
        self.fail_calls = set(fail_calls)
        self.calls = []

    def get_inputs(self):
        return [SimpleNamespace(name=self.input_name)]

    def get_outputs(self):
        return [SimpleNamespace(name=self.output_name)]

    def run(self, output_names, feeds):
        self.calls.append({"output_names": output_names, "feeds": feeds})
        if len(self.calls) in self.fail_calls:
            raise RuntimeError("backend exploded")
        return [np.asarray([self.logits], dtype=np.float32)]


class FakeSessionFactory:
    """Replacement for onnxruntime.InferenceSession recording its arguments."""

    def __init__(self, backend=None):
        self.backend = backend or FakeBackend()
        self.calls = []

    def __call__(self, model_bytes, sess_options=None, providers=None):
        self.calls.append(
            {"model_bytes": model_bytes, "sess_options": sess_options, "providers": providers}
        )
        return self.backend


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_ort(monkeypatch, fake_backend):
    """Patch onnxruntime.InferenceSession to return ``fake_backend``."""
    factory = FakeSessionFactory(fake_backend)
    monkeypatch.setattr("edge.loader.ort.InferenceSession", factory)
    return factory


# ============================================================================
# Fake HTTP transport
# ============================================================================

class FakeResponse:
    """Minimal streaming requests.Response."""

    def __init__(self, body=b"", status_code=200, headers=None, chunk_hook=None):
        self.body = body
        self.status_code = status_code
        self.headers = headers if headers is not None else {"Content-Length": str(len(body))}
        self.chunk_hook = chunk_hook
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size=1):
        for offset in range(0, len(self.body), chunk_size):
            if self.chunk_hook is not None:
                self.chunk_hook(offset)
            yield self.body[offset:offset + chunk_size]

    def close(self):
        self.closed = True


class FakeHTTPSession:
    """Serves FakeResponse objects by URL."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.requests = []

    def get(self, url, stream=False, timeout=None):
        self.requests.append(url)
        if url not in self.responses:
            raise requests.exceptions.ConnectionError(f"No route to {url}")
        return self.responses[url]


class GatedResponse(FakeResponse):
    """FakeResponse whose stream stalls at ``hold_at`` until ``release()``."""

    def __init__(self, body, hold_at):
        self._gate = threading.Event()
        super().__init__(body, chunk_hook=self._hold)
        self._hold_at = hold_at

    def _hold(self, offset):
        if offset >= self._hold_at:
            self._gate.wait(5.0)

    def release(self):
        self._gate.set()


async def wait_until(predicate, timeout=5.0):
    """Poll ``predicate`` from the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached before timeout")
        await asyncio.sleep(0.001)


# ============================================================================
# Resources
# ============================================================================

def npy_bytes(values):
    """Serialize an array with numpy's own NPY writer."""
    buffer = io.BytesIO()
    np.save(buffer, np.asarray(values), allow_pickle=False)
    return buffer.getvalue()


def raw_npy(header, payload=b"", version=(1, 0), magic=b"\x93NUMPY", header_len=None):
    """Assemble an NPY buffer by hand, padding the header to 64 bytes."""
    header_bytes = header.encode("latin1")
    padded_len = -(-(10 + len(header_bytes) + 1) // 64) * 64 - 10
    header_bytes = header_bytes + b" " * (padded_len - len(header_bytes) - 1) + b"\n"
    declared = len(header_bytes) if header_len is None else header_len
    return magic + bytes(version) + struct.pack("<H", declared) + header_bytes + payload


def embedding_values(seed=0, size=256):
    return np.random.default_rng(seed).standard_normal(size).astype(np.float32)


@pytest.fixture
def npy_file(tmp_path):
    """A valid 256-value float32 embedding on disk."""
    path = tmp_path / "sample_0.npy"
    path.write_bytes(npy_bytes(embedding_values()))
    return path


@pytest.fixture
def image_file(tmp_path):
    """A small RGB fundus-like PNG (resized to 224x224 on load)."""
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(300, 280, 3), dtype=np.uint8)
    path = tmp_path / "fundus_0.png"
    Image.fromarray(pixels, "RGB").save(path)
    return path


@pytest.fixture
def model_file(tmp_path):
    """Opaque model bytes; session creation is faked with ``fake_ort``."""
    path = tmp_path / "student.onnx"
    path.write_bytes(b"fake-onnx-graph" * 1000)
    return path


@pytest.fixture
def config(tmp_path, model_file):
    cfg = Config()
    cfg.model_url = str(model_file)
    cfg.manifest_path = str(tmp_path / "manifest.json")
    cfg.noise_amplitude = 0.0
    cfg.seed = 1234
    cfg.download_chunk_size = 1024
    return cfg


@pytest.fixture
def samples(tmp_path, image_file):
    """Three embedding samples plus one image-only sample."""
    result = []
    for index in range(3):
        npy_path = tmp_path / f"emb_{index}.npy"
        npy_path.write_bytes(npy_bytes(embedding_values(seed=index)))
        result.append(
            Sample(
                original_path=f"images/fundus_{index}.png",
                precomputed_tensor_path=str(npy_path),
                ground_truth_index=index,
            )
        )
    result.append(Sample(original_path=str(image_file), ground_truth_index=3))
    return result


@pytest.fixture
def fetcher():
    return ResourceFetcher(chunk_size=1024)


@pytest.fixture
def orchestrator(fake_backend, fetcher):
    """Orchestrator over a Ready fake session with noise disabled."""
    return InferenceOrchestrator(
        session=ModelSession(fake_backend),
        fetcher=fetcher,
        preprocessor=ImagePreprocessor(fetcher),
        cache=TensorCache(capacity=5),
        class_names=("Normal", "Glaucoma", "Myopia", "Diabetes"),
        noise_amplitude=0.0,
        rng=np.random.default_rng(42),
    )
