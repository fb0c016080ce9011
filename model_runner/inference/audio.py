"""Audio decoding and Whisper log-mel feature extraction.

Patterns applied:
- WAV parsing and resampling with scipy (wavfile, resample_poly)
- Features computed with numpy in float32, Whisper conventions:
  n_fft=400, hop=160, periodic Hann window, last STFT frame dropped,
  log10 clamped at 1e-10, dynamic range limited to 8, scaled (x + 4) / 4
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from math import gcd
from pathlib import Path

import numpy as np
from scipy.io import wavfile
from scipy.signal import get_window, resample_poly

from model_runner.core.constants import HOP_LENGTH, N_FFT, N_MELS, SAMPLE_RATE
from model_runner.core.exceptions import ConfigurationError, ValidationError
from model_runner.core.logging import get_logger


logger = get_logger(__name__)


# =============================================================================
# WAV Decoding
# =============================================================================


def decode_wav(data: bytes, target_sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Decode a WAV payload to mono float32 samples at target_sample_rate.

    Raises:
        ValidationError: If the payload is empty, unreadable or has no samples.
    """
    if not data:
        raise ValidationError("Audio payload is empty", field="audio_content")
    try:
        source_rate, samples = wavfile.read(io.BytesIO(data))
    except (ValueError, EOFError, OSError) as e:
        raise ValidationError(f"Unable to parse WAV payload: {e}", field="audio_content") from e

    if samples.size == 0:
        raise ValidationError("Audio payload contained no samples", field="audio_content")

    if samples.dtype.kind == "u":
        # 8-bit PCM is unsigned with a midpoint of 128
        info = np.iinfo(samples.dtype)
        midpoint = (info.max + 1) / 2.0
        samples = (samples.astype(np.float32) - midpoint) / midpoint
    elif samples.dtype.kind == "i":
        samples = samples.astype(np.float32) / float(-np.iinfo(samples.dtype).min)
    elif samples.dtype.kind == "f":
        samples = samples.astype(np.float32)
    else:
        raise ValidationError(f"Unsupported audio sample type {samples.dtype}", field="audio_content")

    if samples.ndim > 1:
        samples = samples.mean(axis=1)

    if source_rate != target_sample_rate:
        divisor = gcd(int(source_rate), int(target_sample_rate))
        samples = resample_poly(samples, target_sample_rate // divisor, int(source_rate) // divisor)

    return np.clip(samples, -1.0, 1.0).astype(np.float32)


# =============================================================================
# Mel Filterbank
# =============================================================================


def _hz_to_mel(frequencies: np.ndarray) -> np.ndarray:
    """Slaney mel scale: linear below 1 kHz, logarithmic above."""
    f_sp = 200.0 / 3
    mels = frequencies / f_sp
    min_log_hz = 1000.0
    min_log_mel = min_log_hz / f_sp
    logstep = np.log(6.4) / 27.0
    log_region = frequencies >= min_log_hz
    mels = np.where(
        log_region,
        min_log_mel + np.log(np.maximum(frequencies, min_log_hz) / min_log_hz) / logstep,
        mels,
    )
    return mels


def _mel_to_hz(mels: np.ndarray) -> np.ndarray:
    f_sp = 200.0 / 3
    freqs = f_sp * mels
    min_log_hz = 1000.0
    min_log_mel = min_log_hz / f_sp
    logstep = np.log(6.4) / 27.0
    log_region = mels >= min_log_mel
    return np.where(log_region, min_log_hz * np.exp(logstep * (mels - min_log_mel)), freqs)


@dataclass(frozen=True)
class MelFilterBank:
    """Mel filter weights with shape (n_mels, n_fft // 2 + 1)."""

    filters: np.ndarray

    @property
    def n_mels(self) -> int:
        return int(self.filters.shape[0])

    @classmethod
    def from_file(cls, path: Path | str, n_mels: int = N_MELS, n_fft: int = N_FFT) -> MelFilterBank:
        """Load little-endian float32 weights (the ``melfilters.bytes`` layout).

        Raises:
            ConfigurationError: If the file is missing or has the wrong size.
        """
        path = Path(path)
        if not path.is_file():
            msg = f"Mel filter file not found: {path}"
            raise ConfigurationError(msg, setting="mel_filters_path")

        weights = np.frombuffer(path.read_bytes(), dtype="<f4")
        n_freqs = n_fft // 2 + 1
        if weights.size != n_mels * n_freqs:
            msg = f"Mel filter file {path} holds {weights.size} values, expected {n_mels}x{n_freqs}"
            raise ConfigurationError(msg, setting="mel_filters_path")

        logger.info("Mel filterbank loaded", path=str(path), n_mels=n_mels)
        return cls(weights.reshape(n_mels, n_freqs).astype(np.float32))

    @classmethod
    def compute(
        cls,
        n_mels: int = N_MELS,
        n_fft: int = N_FFT,
        sample_rate: int = SAMPLE_RATE,
    ) -> MelFilterBank:
        """Build Slaney-normalized triangular filters over [0, sample_rate / 2]."""
        fft_freqs = np.fft.rfftfreq(n_fft, d=1.0 / sample_rate)
        mel_points = np.linspace(
            _hz_to_mel(np.array(0.0)), _hz_to_mel(np.array(sample_rate / 2.0)), n_mels + 2
        )
        hz_points = _mel_to_hz(mel_points)

        fdiff = np.diff(hz_points)
        ramps = np.subtract.outer(hz_points, fft_freqs)
        weights = np.zeros((n_mels, fft_freqs.shape[0]), dtype=np.float64)
        for i in range(n_mels):
            lower = -ramps[i] / fdiff[i]
            upper = ramps[i + 2] / fdiff[i + 1]
            weights[i] = np.maximum(0.0, np.minimum(lower, upper))

        enorm = 2.0 / (hz_points[2 : n_mels + 2] - hz_points[:n_mels])
        weights *= enorm[:, np.newaxis]
        return cls(weights.astype(np.float32))

    @classmethod
    def load(cls, path: str | None, n_mels: int = N_MELS) -> MelFilterBank:
        """Read the bundled file when configured, otherwise compute the filters."""
        if path is not None:
            return cls.from_file(path, n_mels=n_mels)
        return cls.compute(n_mels=n_mels)


# =============================================================================
# Log-Mel Spectrogram
# =============================================================================


def log_mel_spectrogram(
    samples: np.ndarray,
    filterbank: MelFilterBank,
    padding: int = 0,
) -> np.ndarray:
    """Compute a Whisper log-mel spectrogram.

    Args:
        samples: Mono float32 samples at 16 kHz.
        filterbank: Mel filters matching N_FFT.
        padding: Zero samples appended before analysis.

    Returns:
        Array of shape (n_mels, frames), frames = (len(samples) + padding) // HOP_LENGTH.
    """
    audio = np.asarray(samples, dtype=np.float32)
    if padding > 0:
        audio = np.pad(audio, (0, padding))

    half = N_FFT // 2
    mode = "reflect" if audio.shape[0] > half else "constant"
    padded = np.pad(audio, (half, half), mode=mode)

    window = get_window("hann", N_FFT, fftbins=True).astype(np.float32)
    frames = np.lib.stride_tricks.sliding_window_view(padded, N_FFT)[::HOP_LENGTH]
    spectrum = np.fft.rfft(frames * window, axis=-1)
    power = (np.abs(spectrum) ** 2)[:-1]

    mel = filterbank.filters @ power.T.astype(np.float32)
    log_spec = np.log10(np.maximum(mel, 1e-10))
    log_spec = np.maximum(log_spec, log_spec.max() - 8.0)
    return ((log_spec + 4.0) / 4.0).astype(np.float32)
