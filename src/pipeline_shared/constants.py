"""Shared constants for the stage pipeline."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Stage tokens
# ---------------------------------------------------------------------------
PRESALES_STAGES = ["PS0", "PS1", "PS2", "PS3", "PS4", "PS5"]
DELIVERY_STAGES = ["S0", "S1", "S2", "S3"]
PRODUCTION_STAGES = ["S4", "S5"]

PRESALES_TERMINAL_STAGE = "PS5"

# Named multi-stage pipelines (run in order, stop at first non-success)
DEFAULT_PIPELINES: dict[str, list[str]] = {
    "presales": list(PRESALES_STAGES),
    "delivery": ["S2", "S3"],
}

# ---------------------------------------------------------------------------
# Gate flags
# ---------------------------------------------------------------------------
GATE_PAYMENT_VERIFIED = "payment_verified"
GATE_DNS_VERIFIED = "dns_verified"
GATE_CONTRACT_SIGNED = "contract_signed"
GATE_SSL_VERIFIED = "ssl_verified"

ALL_GATES = [
    GATE_PAYMENT_VERIFIED,
    GATE_DNS_VERIFIED,
    GATE_CONTRACT_SIGNED,
    GATE_SSL_VERIFIED,
]

PRODUCTION_REQUIRED_GATES = [
    GATE_PAYMENT_VERIFIED,
    GATE_DNS_VERIFIED,
    GATE_SSL_VERIFIED,
]

# ---------------------------------------------------------------------------
# Task catalog defaults (stage -> task names)
# ---------------------------------------------------------------------------
DEFAULT_STAGE_TASKS: dict[str, list[str]] = {
    "PS0": ["presales-agent"],
    "PS1": ["presales-agent"],
    "PS2": ["presales-agent"],
    "PS3": ["presales-agent"],
    "PS4": ["presales-agent"],
    "PS5": ["presales-agent"],
    "S0": ["setup-agent"],
    "S1": ["planning-agent"],
    "S2": ["designer-agent", "frontend-agent", "backend-agent"],
    "S3": ["qa-agent"],
    "S4": ["deployment-agent"],
    "S5": ["deployment-agent"],
}

# The QA stage derives its test plan from this stage's consolidation.
QA_SOURCE_STAGE = "S2"

CONSOLIDATOR_NAME = "coordinator"
CONSOLIDATOR_VERSION = "1.0"

# ---------------------------------------------------------------------------
# File layout
# ---------------------------------------------------------------------------
CLIENT_REGISTRY_FILE = "clients.json"
CLIENT_BRIEF_FILE = "brief.json"
CLIENT_GATES_FILE = "gates.json"
RUNS_DIR = "runs"

DEFAULT_CLIENTS_DIR = "clients"
DEFAULT_OUTPUT_ROOT = "outputs"

# ---------------------------------------------------------------------------
# Executor defaults
# ---------------------------------------------------------------------------
DEFAULT_MAX_CONCURRENT_TASKS = 3
DEFAULT_TASK_TIMEOUT = 300  # seconds

# ---------------------------------------------------------------------------
# Budget defaults (USD)
# ---------------------------------------------------------------------------
DEFAULT_PER_RUN_USD = 1.00
DEFAULT_PER_STAGE_USD = 2.50
DEFAULT_PER_CLIENT_TOTAL_USD = 25.00
DEFAULT_PER_CLIENT_DAY_USD = 5.00

# ---------------------------------------------------------------------------
# Alert event types
# ---------------------------------------------------------------------------
ALERT_BLOCKED = "blocked"
ALERT_FAILED = "failed"
ALERT_PRODUCTION_ATTEMPT = "production-attempt"

ALL_ALERT_TYPES = [ALERT_BLOCKED, ALERT_FAILED, ALERT_PRODUCTION_ATTEMPT]
