SCRIPT_SUFFIX = ".ai.yaml"

# Reserved variable names written by the engine
RESPONSE_VAR = "RESPONSE"
LATEST_RESULT_VAR = "LatestResult"
CHAIN_CONTENT_VAR = "content"

MAX_LOOP_ITERATIONS = 1000
MAX_CHAIN_HOPS = 64
MAX_TOOL_ROUNDS = 10

# Provider defaults
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0
DEFAULT_MAX_TOKENS = 2048
ANTHROPIC_MAX_TOKENS = 4096
ANTHROPIC_VERSION = "2023-06-01"

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
OLLAMA_BASE_URL = "http://localhost:11434"

# Timeout tiers in seconds
OLLAMA_CONNECT_TIMEOUT = 120.0
OLLAMA_READ_TIMEOUT = 600.0
OLLAMA_WRITE_TIMEOUT = 120.0
PRO_MODEL_TIMEOUT = 60.0
FAST_MODEL_TIMEOUT = 20.0
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 60.0

FAST_MODEL_MARKERS = ("flash", "lite", "mini", "haiku")

# Retry policy
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_DELAY = 1.0
CREDENTIAL_COOLDOWN = 60.0

CACHE_TTL = 300
CHARS_PER_TOKEN = 4.0

# USD per 1K tokens
COST_PER_1K_TOKENS = {
    "gpt-4": 0.03,
    "gpt-4-turbo": 0.01,
    "gpt-3.5-turbo": 0.0015,
    "gemini-pro": 0.0005,
    "claude-3-opus": 0.015,
    "claude-3-sonnet": 0.003,
    "claude-3-haiku": 0.00025,
    "ollama": 0.0,
}
DEFAULT_COST_PER_1K_TOKENS = 0.001

SCRIPT_PATH_ENV = "PPE_SCRIPT_PATH"
