"""
Worker Unit: feature extraction for exactly one source reference.

Runs inside an isolated worker process (see process.py). Fetches and decodes
the audio, computes the frame-wise MusiCNN input tensor together with energy,
loudness and tempo, and sends exactly one terminal message back over a pipe.
Model inference never happens here; classifier weights live in the
coordinator (see inference.py).
"""

import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Iterator, Optional
from urllib.parse import urlparse

import httpx
import numpy as np

from .config import Config, configure_logging, configure_threads
from .models import ErrorMessage, FeaturesMessage

logger = logging.getLogger('audio-analyzer.extraction')

SAMPLE_RATE = 16000
FRAME_SIZE = 512  # TensorflowInputMusiCNN only accepts 512-sample frames at 16 kHz
MEL_BANDS = 96
DOWNLOAD_CHUNK_SIZE = 1 << 16

_essentia = None


def import_essentia():
    """
    Import essentia on first use.

    Deferred so that configure_threads() has already exported the TensorFlow
    thread limits by the time the TensorFlow runtime is loaded.
    """
    global _essentia
    if _essentia is None:
        import essentia
        # Suppress Essentia's internal "No network created" warnings that spam logs
        essentia.log.warningActive = False
        essentia.log.infoActive = False
        import essentia.standard  # noqa: F401
        _essentia = essentia
    return _essentia


@dataclass(frozen=True)
class WorkerOptions:
    """Spawn parameters shared by every worker process (must stay picklable)."""

    music_path: str = '/music'
    hop_size: int = 1024
    fetch_timeout: float = 60.0
    threads_per_worker: int = 1
    max_memory_mb: int = 0
    log_level: str = 'INFO'

    @classmethod
    def from_config(cls, config: Config) -> 'WorkerOptions':
        return cls(
            music_path=config.music_path,
            hop_size=config.feature_hop_size,
            fetch_timeout=config.fetch_timeout,
            threads_per_worker=config.threads_per_worker,
            max_memory_mb=config.worker_max_memory_mb,
            log_level=config.log_level,
        )


def is_remote(source_ref: str) -> bool:
    return urlparse(source_ref).scheme in ('http', 'https')


class FeatureExtractor:
    """Essentia-based extraction of the MusiCNN input tensor and scalar metrics."""

    def __init__(self, music_path: str = '/music', hop_size: int = 1024,
                 fetch_timeout: float = 60.0):
        self.music_path = music_path
        self.hop_size = hop_size
        self.fetch_timeout = fetch_timeout

    @contextlib.contextmanager
    def open_source(self, source_ref: str) -> Iterator[str]:
        """Yield a local file path for the reference, downloading URLs to a temp file."""
        if is_remote(source_ref):
            suffix = os.path.splitext(urlparse(source_ref).path)[1] or '.audio'
            fd, tmp_path = tempfile.mkstemp(prefix='audio-analyzer-', suffix=suffix)
            try:
                with os.fdopen(fd, 'wb') as out:
                    self._download(source_ref, out)
                yield tmp_path
            finally:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
        else:
            yield self.resolve_local_path(source_ref)

    def _download(self, url: str, out) -> None:
        timeout = httpx.Timeout(self.fetch_timeout, connect=10.0)
        with httpx.stream('GET', url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()
            for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                out.write(chunk)

    def resolve_local_path(self, source_ref: str) -> str:
        if source_ref.startswith('file://'):
            source_ref = urlparse(source_ref).path
        # Normalize path separators (Windows paths -> Unix)
        normalized = source_ref.replace('\\', '/').lstrip('/')
        root = os.path.realpath(self.music_path)
        full_path = os.path.realpath(os.path.join(root, normalized))
        if os.path.commonpath([root, full_path]) != root:
            raise ValueError(f"Path escapes music root: {source_ref}")
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"File not found: {source_ref}")
        return full_path

    def load_audio(self, file_path: str) -> np.ndarray:
        """Decode the file as a mono 16 kHz signal."""
        es = import_essentia().standard
        return es.MonoLoader(filename=file_path, sampleRate=SAMPLE_RATE)()

    @staticmethod
    def validate_audio(audio: Any) -> Optional[str]:
        """Return an error message for audio that would break extraction, else None."""
        if audio is None or len(audio) == 0:
            return "Audio is empty"
        if len(audio) < FRAME_SIZE:
            return f"Audio too short: {len(audio)} samples"
        if np.any(np.isnan(audio)) or np.any(np.isinf(audio)):
            return "Audio contains NaN or Inf values (corrupted)"
        return None

    def compute_features(self, audio: np.ndarray) -> FeaturesMessage:
        es = import_essentia().standard

        energy = es.Energy()(audio)
        _, loudness = es.DynamicComplexity()(audio)
        tempo = es.PercivalBpmEstimator()(audio)

        mel_input = es.TensorflowInputMusiCNN()
        frames = [
            mel_input(frame)
            for frame in es.FrameGenerator(audio, frameSize=FRAME_SIZE,
                                           hopSize=self.hop_size, startFromZero=True)
        ]
        tensor = np.asarray(frames, dtype=np.float32).reshape(-1, MEL_BANDS)

        return FeaturesMessage(
            feature_tensor=tensor,
            energy=float(energy),
            loudness=float(loudness),
            tempo=float(tempo),
        )

    def extract(self, source_ref: str) -> FeaturesMessage:
        with self.open_source(source_ref) as path:
            audio = self.load_audio(path)
        error = self.validate_audio(audio)
        if error:
            raise ValueError(error)
        features = self.compute_features(audio)
        logger.info(
            f"Extracted {source_ref}: frames={features.feature_tensor.shape[0]}, "
            f"energy={features.energy:.3f}, loudness={features.loudness:.2f}, tempo={features.tempo:.1f}"
        )
        return features


def apply_memory_limit(max_memory_mb: int) -> None:
    """Cap this process's address space; no-op when the limit is 0."""
    if max_memory_mb <= 0:
        return
    import resource

    limit = max_memory_mb * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError) as e:
        logger.warning(f"Could not apply worker memory limit of {max_memory_mb} MB: {e}")


def run_worker(conn, source_ref: str, options: WorkerOptions) -> None:
    """
    Process entry point of a Worker Unit.

    Sends exactly one message over `conn`: a features message on success,
    an error message for any caught failure. Hard crashes (signals, OOM kills)
    send nothing and are classified by the coordinator from the exit code.
    """
    configure_threads(options.threads_per_worker)
    configure_logging(options.log_level)
    apply_memory_limit(options.max_memory_mb)

    extractor = FeatureExtractor(
        music_path=options.music_path,
        hop_size=options.hop_size,
        fetch_timeout=options.fetch_timeout,
    )
    try:
        message = extractor.extract(source_ref).to_dict()
    except Exception as e:
        logger.error(f"Error processing audio {source_ref}: {e}")
        message = ErrorMessage(reason=str(e) or type(e).__name__).to_dict()

    try:
        conn.send(message)
    finally:
        conn.close()
