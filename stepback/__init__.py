# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback - Resumable, stepwise backup and restore engine.

Dumps and restores databases, archives and extracts directory trees, and
downloads large remote files in bounded steps. Every step persists enough
progress that a caller with a short per-request time limit can call it
again and again until the work is done, surviving crashes in between.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from stepback.builder import create_config

# Sessions
from stepback.session import (
    Session,
    SessionStatus,
    create_session,
    load_session,
    remove_session,
    save_session,
)

# Driver helpers
from stepback.core import EngineStats, run_until_done

# Environment-based configuration and profiles (additional helpers)
from stepback.env import (
    create_config_from_env,
    conservative,
    throughput,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "conservative",
    "throughput",
    # Sessions
    "Session",
    "SessionStatus",
    "create_session",
    "save_session",
    "load_session",
    "remove_session",
    # Driver helpers
    "run_until_done",
    "EngineStats",
]
