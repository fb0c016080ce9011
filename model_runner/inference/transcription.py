"""Audio transcription over a Whisper-style encoder-decoder.

The audio is cut into 30 s windows of 3000 mel frames. Each window is encoded
once, then decoded from the prompt SOT, language, transcribe, no-timestamps.
A window whose output looks degenerate (highly compressible text or a low
average log probability) is decoded again at the next fallback temperature.
Windows judged to be silence are dropped.
"""

from __future__ import annotations

import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from model_runner.core.constants import HOP_LENGTH, N_FRAMES, N_SAMPLES, SAMPLE_RATE
from model_runner.core.exceptions import (
    InferenceError,
    ModelRunnerError,
    RequestCancelledError,
    ValidationError,
)
from model_runner.core.logging import get_logger
from model_runner.inference.audio import MelFilterBank, log_mel_spectrogram
from model_runner.inference.decode import DecodeState, FinishReason, run_decode_loop
from model_runner.inference.runtimes.base import SpeechSeq2SeqRuntime
from model_runner.inference.sampling import (
    RepeatPenaltyScheme,
    new_generator,
    select_token,
    softmax,
)
from model_runner.models.requests import SamplingConfig


if TYPE_CHECKING:
    from model_runner.services.model_registry import ModelInstance


logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

SOT_TOKEN = "<|startoftranscript|>"
TRANSCRIBE_TOKEN = "<|transcribe|>"
NO_TIMESTAMPS_TOKEN = "<|notimestamps|>"
EOT_TOKEN = "<|endoftext|>"
NO_SPEECH_TOKENS = ("<|nocaptions|>", "<|nospeech|>")

NO_SPEECH_THRESHOLD = 0.6
LOGPROB_THRESHOLD = -1.0
COMPRESSION_RATIO_THRESHOLD = 2.4
FALLBACK_TEMPERATURES = (0.2, 0.4, 0.6, 0.8, 1.0)

# Keeps log probabilities finite when a token's probability underflows
_MIN_PROB = 1e-12


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class DecodingResult:
    text: str
    avg_logprob: float
    no_speech_prob: float
    temperature: float
    compression_ratio: float
    tokens: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class Segment:
    start: float
    duration: float
    result: DecodingResult


@dataclass(frozen=True)
class TranscriptionResult:
    segments: list[Segment]
    text: str
    inference_time: float


def compression_ratio(text: str) -> float:
    """Ratio of UTF-8 size to zlib-compressed size."""
    raw = text.encode("utf-8")
    if not raw:
        return 0.0
    return len(raw) / len(zlib.compress(raw))


def default_transcription_config() -> SamplingConfig:
    """Greedy first pass with no nucleus filter or repeat penalty."""
    return SamplingConfig(temperature=0.0, top_p=None, repeat_penalty=1.0)


def fallback_temperatures(initial: float | None) -> list[float]:
    """The request temperature followed by the higher fallback steps."""
    start = initial or 0.0
    return [start, *(t for t in FALLBACK_TEMPERATURES if t > start)]


# =============================================================================
# Special Tokens
# =============================================================================


@dataclass(frozen=True)
class WhisperTokens:
    sot: int
    transcribe: int
    no_timestamps: int
    eot: int
    no_speech: int

    @classmethod
    def from_runtime(cls, runtime: SpeechSeq2SeqRuntime) -> WhisperTokens:
        """Look up the control tokens in the runtime vocabulary.

        Raises:
            InferenceError: If a control token is missing.
        """

        def require(token: str) -> int:
            token_id = runtime.token_to_id(token)
            if token_id is None:
                msg = f"no token-id for {token}"
                raise InferenceError(msg)
            return token_id

        no_speech = next(
            (tid for tid in (runtime.token_to_id(t) for t in NO_SPEECH_TOKENS) if tid is not None),
            None,
        )
        if no_speech is None:
            msg = "Unable to find any non-speech token"
            raise InferenceError(msg)

        return cls(
            sot=require(SOT_TOKEN),
            transcribe=require(TRANSCRIBE_TOKEN),
            no_timestamps=require(NO_TIMESTAMPS_TOKEN),
            eot=require(EOT_TOKEN),
            no_speech=no_speech,
        )


# =============================================================================
# Decode Task
# =============================================================================


class SpeechDecodeTask:
    """DecodeTask cross-attending one encoded audio window."""

    def __init__(
        self,
        runtime: SpeechSeq2SeqRuntime,
        features: Any,
        tokens: WhisperTokens,
        suppress_mask: np.ndarray,
    ) -> None:
        self._runtime = runtime
        self._features = features
        self._tokens = tokens
        self._suppress_mask = suppress_mask
        self.no_speech_prob = float("nan")

    def prime(self, state: DecodeState) -> np.ndarray:
        logits, state.cache = self._runtime.decoder_forward(state.tokens, self._features, None)
        # Probability of "no speech" predicted right after SOT
        self.no_speech_prob = float(softmax(logits[0])[self._tokens.no_speech])
        return logits[-1] + self._suppress_mask

    def step(self, state: DecodeState) -> np.ndarray:
        logits, state.cache = self._runtime.decoder_forward(state.tokens[-1:], self._features, state.cache)
        return logits[-1] + self._suppress_mask

    def is_stop(self, token: int, state: DecodeState) -> bool:
        return token == self._tokens.eot


# =============================================================================
# Engine
# =============================================================================


class TranscriptionEngine:
    """Runs transcription requests against a resident speech model."""

    def __init__(
        self,
        filterbank: MelFilterBank,
        penalty_scheme: RepeatPenaltyScheme = RepeatPenaltyScheme.SIGNED,
    ) -> None:
        self._filterbanks: dict[int, MelFilterBank] = {filterbank.n_mels: filterbank}
        self._penalty_scheme = penalty_scheme
        self._lock = threading.Lock()

    def filterbank_for(self, n_mels: int) -> MelFilterBank:
        """Return the filterbank for n_mels, computing it once if needed."""
        with self._lock:
            bank = self._filterbanks.get(n_mels)
            if bank is None:
                bank = MelFilterBank.compute(n_mels=n_mels)
                self._filterbanks[n_mels] = bank
            return bank

    def transcribe(
        self,
        instance: ModelInstance,
        samples: np.ndarray,
        language: str,
        config: SamplingConfig | None = None,
        cancel: threading.Event | None = None,
        max_length: int | None = None,
    ) -> TranscriptionResult:
        """Transcribe 16 kHz mono samples.

        Raises:
            ValidationError: If the language is unknown to the model.
            RequestCancelledError: If cancel is set mid-decode.
            InferenceError: If the runtime fails on every fallback temperature.
        """
        definition = instance.definition
        runtime = instance.runtime
        if not isinstance(runtime, SpeechSeq2SeqRuntime):
            msg = f"Model '{definition.id}' does not transcribe audio"
            raise ValidationError(msg, field="model", value=definition.id)

        config = config or default_transcription_config()
        tokens = WhisperTokens.from_runtime(runtime)
        language_token = runtime.token_to_id(f"<|{language}|>")
        if language_token is None:
            msg = f"language {language} is not supported"
            raise ValidationError(msg, field="language", value=language)

        suppress_mask = np.zeros(runtime.vocab_size, dtype=np.float32)
        suppress = [t for t in runtime.suppress_tokens if 0 <= t < runtime.vocab_size]
        suppress_mask[suppress] = -np.inf

        sample_len = runtime.max_target_positions // 2
        if max_length is not None:
            sample_len = min(sample_len, max_length)

        start = time.perf_counter()
        mel = log_mel_spectrogram(samples, self.filterbank_for(runtime.num_mel_bins), padding=N_SAMPLES)
        content_frames = int(samples.shape[0]) // HOP_LENGTH
        prompt = [tokens.sot, language_token, tokens.transcribe, tokens.no_timestamps]

        segments: list[Segment] = []
        seek = 0
        while seek < content_frames:
            if cancel is not None and cancel.is_set():
                raise RequestCancelledError()

            time_offset = seek * HOP_LENGTH / SAMPLE_RATE
            segment_size = min(content_frames - seek, N_FRAMES)
            mel_segment = mel[:, seek : seek + N_FRAMES]
            segment_duration = segment_size * HOP_LENGTH / SAMPLE_RATE

            try:
                features = runtime.encode_audio(mel_segment)
            except Exception as e:
                msg = f"Audio encoder failed for {definition.id}: {e}"
                raise InferenceError(msg, model_id=definition.id) from e

            result = self._decode_with_fallback(
                runtime, features, tokens, suppress_mask, prompt, config, sample_len, cancel, definition.id
            )
            seek += segment_size

            if result.no_speech_prob > NO_SPEECH_THRESHOLD and result.avg_logprob < LOGPROB_THRESHOLD:
                logger.debug("No speech detected, skipping segment", model_id=definition.id, start=time_offset)
                continue

            segments.append(Segment(start=time_offset, duration=segment_duration, result=result))

        inference_time = time.perf_counter() - start
        text = " ".join(s.result.text.strip() for s in segments if s.result.text.strip())
        logger.info(
            "Transcription complete",
            model_id=definition.id,
            segments=len(segments),
            audio_seconds=round(samples.shape[0] / SAMPLE_RATE, 2),
            inference_time=round(inference_time, 4),
        )
        return TranscriptionResult(segments=segments, text=text, inference_time=inference_time)

    def _decode_with_fallback(
        self,
        runtime: SpeechSeq2SeqRuntime,
        features: Any,
        tokens: WhisperTokens,
        suppress_mask: np.ndarray,
        prompt: list[int],
        config: SamplingConfig,
        sample_len: int,
        cancel: threading.Event | None,
        model_id: str,
    ) -> DecodingResult:
        temperatures = fallback_temperatures(config.temperature)
        for index, temperature in enumerate(temperatures):
            is_last = index == len(temperatures) - 1
            try:
                result = self._decode(
                    runtime, features, tokens, suppress_mask, prompt, config, temperature, sample_len, cancel
                )
            except InferenceError as e:
                if is_last:
                    raise
                self._log_fallback(model_id, temperature, e.message)
                continue
            except ModelRunnerError:
                raise
            except Exception as e:
                if is_last:
                    msg = f"Transcription failed for {model_id}: {e}"
                    raise InferenceError(msg, model_id=model_id) from e
                self._log_fallback(model_id, temperature, str(e))
                continue

            needs_fallback = (
                result.compression_ratio > COMPRESSION_RATIO_THRESHOLD or result.avg_logprob < LOGPROB_THRESHOLD
            )
            if is_last or not needs_fallback or result.no_speech_prob > NO_SPEECH_THRESHOLD:
                return result

        msg = f"Transcription produced no result for {model_id}"
        raise InferenceError(msg, model_id=model_id)

    def _decode(
        self,
        runtime: SpeechSeq2SeqRuntime,
        features: Any,
        tokens: WhisperTokens,
        suppress_mask: np.ndarray,
        prompt: list[int],
        config: SamplingConfig,
        temperature: float,
        sample_len: int,
        cancel: threading.Event | None,
    ) -> DecodingResult:
        step_config = config.model_copy(update={"temperature": temperature})
        rng = new_generator(config.seed)
        task = SpeechDecodeTask(runtime, features, tokens, suppress_mask)
        state = DecodeState.from_prompt(prompt)
        last_logprob = 0.0
        sum_logprob = 0.0

        def select(scores: np.ndarray, current: DecodeState) -> int:
            nonlocal last_logprob
            token = select_token(scores, current.tokens, step_config, rng, self._penalty_scheme)
            last_logprob = float(np.log(max(float(softmax(scores)[token]), _MIN_PROB)))
            return token

        def accept(_token: int) -> None:
            nonlocal sum_logprob
            sum_logprob += last_logprob

        run_decode_loop(task, state, select, max_steps=sample_len, cancel=cancel, on_token=accept)

        text = runtime.decode(state.generated, skip_special_tokens=True)
        sequence_length = len(state.tokens) + (1 if state.finish_reason is FinishReason.EOS else 0)
        return DecodingResult(
            text=text,
            avg_logprob=sum_logprob / sequence_length,
            no_speech_prob=task.no_speech_prob,
            temperature=temperature,
            compression_ratio=compression_ratio(text),
            tokens=state.generated,
        )

    @staticmethod
    def _log_fallback(model_id: str, temperature: float, error: str) -> None:
        logger.warning(
            "Decode failed, retrying at higher temperature",
            model_id=model_id,
            temperature=temperature,
            error=error,
        )
