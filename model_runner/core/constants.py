"""Path and service constants for model-runner.

Container filesystem layout:
    /app/                   # Application root (WORKDIR)
    /app/config/            # models.yaml, clients.yaml
    /app/cache/             # Hugging Face download cache

Note: These are defaults. They can be overridden via environment variables:
    - MODEL_RUNNER_CONFIG_DIR -> overrides CONTAINER_CONFIG_DIR
    - MODEL_RUNNER_CACHE_DIR  -> overrides CONTAINER_CACHE_DIR
"""

# =============================================================================
# Container Filesystem Paths
# =============================================================================

CONTAINER_CONFIG_DIR = "/app/config"
CONTAINER_CACHE_DIR = "/app/cache"

MODELS_FILE_NAME = "models.yaml"
CLIENTS_FILE_NAME = "clients.yaml"


# =============================================================================
# Service Defaults
# =============================================================================

DEFAULT_SERVICE_NAME = "model-runner"
DEFAULT_PORT = 25566
DEFAULT_HOST = "0.0.0.0"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_ENVIRONMENT = "development"


# =============================================================================
# Sampling Defaults (GeneralModelConfig)
# =============================================================================

DEFAULT_TEMPERATURE = 0.6
DEFAULT_TOP_P = 0.6
DEFAULT_REPEAT_PENALTY = 1.1
DEFAULT_REPEAT_CONTEXT_SIZE = 64
GREEDY_TEMPERATURE_EPSILON = 1e-7


# =============================================================================
# Audio (Whisper feature extraction)
# =============================================================================

SAMPLE_RATE = 16000
N_FFT = 400
HOP_LENGTH = 160
N_MELS = 80
CHUNK_LENGTH_S = 30
N_SAMPLES = CHUNK_LENGTH_S * SAMPLE_RATE  # 480000 samples per segment
N_FRAMES = N_SAMPLES // HOP_LENGTH  # 3000 frames per segment

# As per https://developer.mozilla.org/en-US/docs/Web/Media/Formats/Containers#wave_wav
VALID_WAV_MIME_TYPES = frozenset({"audio/wave", "audio/wav", "audio/x-wav", "audio/x-pn-wav"})
