"""Centralized constants for dreamflow."""

# Credentials
TOKEN_REFRESH_WINDOW_SECONDS = 300
OAUTH_STATE_TTL_SECONDS = 600

# Intake
MAX_FILE_SIZE = 50 * 1024 * 1024

# Pipeline
DEFAULT_MAX_ATTEMPTS = 3

# Context selection
CONTEXT_CANDIDATE_LIMIT = 10
CONTEXT_HISTORY_LIMIT = 3
ACTIVE_MOTIF_LIMIT = 8
ACTIVE_MOTIF_WINDOW_DAYS = 30
RECENCY_WINDOW_DAYS = 30

# Motifs
SYMBOL_CONFIDENCE_THRESHOLD = 0.6
THEME_DEFAULT_CONFIDENCE = 0.8
