"""Unit tests for TranscriptionEngine.

Uses FakeWhisper, which emits a fixed script per 30 s window or, in
uncertain mode, a few low-probability tokens that trigger temperature
fallback.
"""

from __future__ import annotations

import threading

import numpy as np
import pytest

from model_runner.core.constants import N_FRAMES, SAMPLE_RATE
from model_runner.core.exceptions import RequestCancelledError, ValidationError
from model_runner.inference.audio import MelFilterBank
from model_runner.inference.transcription import (
    FALLBACK_TEMPERATURES,
    TranscriptionEngine,
    compression_ratio,
    fallback_temperatures,
)
from model_runner.models.definitions import ModelDefinition
from model_runner.models.requests import SamplingConfig
from model_runner.services.model_registry import ModelInstance
from tests.unit.fakes import FakeCausalLM, FakeWhisper


# =============================================================================
# Constants
# =============================================================================

SCRIPT = "hello world"


@pytest.fixture(scope="module")
def engine() -> TranscriptionEngine:
    return TranscriptionEngine(MelFilterBank.compute())


def _instance(runtime: FakeWhisper | FakeCausalLM) -> ModelInstance:
    definition = ModelDefinition.model_validate(
        {"id": "whisper", "family": "speech-seq2seq", "source": {"repo": "openai/whisper-tiny"}}
    )
    return ModelInstance(definition=definition, runtime=runtime)


def _audio(seconds: float) -> np.ndarray:
    t = np.arange(int(seconds * SAMPLE_RATE)) / SAMPLE_RATE
    return (0.3 * np.sin(2 * np.pi * 220.0 * t)).astype(np.float32)


# =============================================================================
# TestHelpers
# =============================================================================


class TestHelpers:
    def test_compression_ratio_of_empty_text(self) -> None:
        assert compression_ratio("") == 0.0

    def test_repetitive_text_compresses_well(self) -> None:
        assert compression_ratio("the same words " * 40) > 2.4

    def test_short_text_does_not_compress(self) -> None:
        assert compression_ratio(SCRIPT) < 2.4

    def test_fallback_starts_at_request_temperature(self) -> None:
        assert fallback_temperatures(0.5) == [0.5, 0.6, 0.8, 1.0]

    def test_fallback_defaults_to_greedy(self) -> None:
        assert fallback_temperatures(None) == [0.0, *FALLBACK_TEMPERATURES]


# =============================================================================
# TestTranscribe
# =============================================================================


class TestTranscribe:
    """Windowing, prompt handling and segment assembly."""

    def test_single_window(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper()

        result = engine.transcribe(_instance(runtime), _audio(1.0), "en")

        assert result.text == SCRIPT
        assert len(result.segments) == 1
        segment = result.segments[0]
        assert segment.start == 0.0
        assert segment.duration == pytest.approx(1.0)
        assert segment.result.temperature == 0.0
        assert segment.result.avg_logprob > -1.0
        assert runtime.encoded_shapes == [(80, N_FRAMES)]

    def test_long_audio_split_into_30s_windows(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper()

        result = engine.transcribe(_instance(runtime), _audio(45.0), "en")

        assert [s.start for s in result.segments] == [0.0, 30.0]
        assert [s.duration for s in result.segments] == pytest.approx([30.0, 15.0])
        assert result.text == f"{SCRIPT} {SCRIPT}"
        assert runtime.encoded_shapes == [(80, N_FRAMES), (80, N_FRAMES)]

    def test_other_supported_language(self, engine: TranscriptionEngine) -> None:
        assert engine.transcribe(_instance(FakeWhisper()), _audio(1.0), "fr").text == SCRIPT

    def test_unknown_language_raises(self, engine: TranscriptionEngine) -> None:
        with pytest.raises(ValidationError, match="language xx is not supported"):
            engine.transcribe(_instance(FakeWhisper()), _audio(1.0), "xx")

    def test_max_length_truncates_segment(self, engine: TranscriptionEngine) -> None:
        result = engine.transcribe(_instance(FakeWhisper()), _audio(1.0), "en", max_length=5)

        assert result.text == "hello"

    def test_suppressed_tokens_never_emitted(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper(script="a#b", suppress="#")

        result = engine.transcribe(_instance(runtime), _audio(1.0), "en")

        assert result.text == "a"

    def test_text_runtime_rejected(self, engine: TranscriptionEngine) -> None:
        with pytest.raises(ValidationError, match="does not transcribe"):
            engine.transcribe(_instance(FakeCausalLM()), _audio(1.0), "en")

    def test_cancel_raises(self, engine: TranscriptionEngine) -> None:
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RequestCancelledError):
            engine.transcribe(_instance(FakeWhisper()), _audio(1.0), "en", cancel=cancel)

    def test_filterbank_computed_for_model_mel_bins(self) -> None:
        engine = TranscriptionEngine(MelFilterBank.compute())
        runtime = FakeWhisper(num_mel_bins=128)

        engine.transcribe(_instance(runtime), _audio(1.0), "en")

        assert runtime.encoded_shapes == [(128, N_FRAMES)]
        assert engine.filterbank_for(128).n_mels == 128


# =============================================================================
# TestFallback
# =============================================================================


class TestFallback:
    """Low-confidence windows are decoded again at higher temperatures."""

    def test_uncertain_window_walks_every_temperature(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper(script=None)

        result = engine.transcribe(_instance(runtime), _audio(1.0), "en")

        assert runtime.decodes == 1 + len(FALLBACK_TEMPERATURES)
        assert result.segments[0].result.temperature == 1.0

    def test_confident_window_decoded_once(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper()

        engine.transcribe(_instance(runtime), _audio(1.0), "en")

        assert runtime.decodes == 1

    def test_request_temperature_is_first_step(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper(script=None)
        config = SamplingConfig(temperature=0.8, top_p=None, repeat_penalty=1.0, seed=7)

        result = engine.transcribe(_instance(runtime), _audio(1.0), "en", config=config)

        assert runtime.decodes == 2
        assert result.segments[0].result.temperature == 1.0

    def test_silent_uncertain_window_skipped(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper(script=None, no_speech=True)

        result = engine.transcribe(_instance(runtime), _audio(1.0), "en")

        assert result.segments == []
        assert result.text == ""
        assert runtime.decodes == 1

    def test_confident_window_kept_despite_no_speech(self, engine: TranscriptionEngine) -> None:
        runtime = FakeWhisper(no_speech=True)

        result = engine.transcribe(_instance(runtime), _audio(1.0), "en")

        assert result.text == SCRIPT
        assert result.segments[0].result.no_speech_prob > 0.6
