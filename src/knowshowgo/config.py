"""
Runtime configuration, read from the environment (and `.env.local` / `.env`).

    KSG_MEMORY_BACKEND       networkx | arango             (networkx)
    KSG_EMBED_DIM            hash embedder dimension        (16)
    KSG_WTA_WEIGHTS          JSON object of weight overrides, e.g. {"truth": 0.5, "vote_score": 0.15}
    KSG_WTA_HALF_LIFE_DAYS   recency half-life in days      (7)
    KSG_WTA_MIN_TRUTH        minimum truth to compete       (0.0)
    KSG_REINFORCE_DELTA      working-memory reinforcement   (1.0)
    KSG_MAX_WEIGHT           working-memory weight cap      (100.0)
    KSG_DECAY_RATE           working-memory decay rate      (0.1)
    KSG_DECAY_EPSILON        working-memory prune threshold (0.01)
    KSG_LOG_FILE             optional JSON log file
"""
import json
import os
from typing import Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from src.knowshowgo.assertions import ResolverPolicy, ScoreWeights, SECONDS_PER_DAY
from src.knowshowgo.errors import OutOfRangeError


class KSGSettings(BaseModel):
    memory_backend: Literal["networkx", "arango"] = "networkx"
    embed_dim: int = Field(16, gt=0)
    policy: ResolverPolicy = Field(default_factory=ResolverPolicy)
    reinforce_delta: float = Field(1.0, ge=0.0)
    max_weight: float = Field(100.0, gt=0.0)
    decay_rate: float = Field(0.1, ge=0.0, le=1.0)
    decay_epsilon: float = Field(0.01, ge=0.0)
    log_file: Optional[str] = None


def _weights_from_env(raw: Optional[str]) -> ScoreWeights:
    if not raw:
        return ScoreWeights()
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise OutOfRangeError(f"KSG_WTA_WEIGHTS is not valid JSON: {exc}", field="KSG_WTA_WEIGHTS") from exc
    if not isinstance(overrides, dict):
        raise OutOfRangeError("KSG_WTA_WEIGHTS must be a JSON object", field="KSG_WTA_WEIGHTS")
    return ScoreWeights(**{**ScoreWeights().model_dump(), **overrides})


def load_settings(env: Optional[Mapping[str, str]] = None, load_env_files: bool = True) -> KSGSettings:
    """Build settings from `env` (default: os.environ). Invalid values raise OutOfRangeError."""
    if env is None:
        if load_env_files:
            load_dotenv(".env.local", override=False)
            load_dotenv(".env", override=False)
        env = os.environ
    try:
        policy = ResolverPolicy(
            weights=_weights_from_env(env.get("KSG_WTA_WEIGHTS")),
            recency_half_life_seconds=float(env.get("KSG_WTA_HALF_LIFE_DAYS", "7")) * SECONDS_PER_DAY,
            min_truth_threshold=float(env.get("KSG_WTA_MIN_TRUTH", "0.0")),
        )
        return KSGSettings(
            memory_backend=env.get("KSG_MEMORY_BACKEND", "networkx"),
            embed_dim=int(env.get("KSG_EMBED_DIM", "16")),
            policy=policy,
            reinforce_delta=float(env.get("KSG_REINFORCE_DELTA", "1.0")),
            max_weight=float(env.get("KSG_MAX_WEIGHT", "100.0")),
            decay_rate=float(env.get("KSG_DECAY_RATE", "0.1")),
            decay_epsilon=float(env.get("KSG_DECAY_EPSILON", "0.01")),
            log_file=env.get("KSG_LOG_FILE") or None,
        )
    except (ValidationError, ValueError) as exc:
        if isinstance(exc, OutOfRangeError):
            raise
        raise OutOfRangeError(f"Invalid configuration: {exc}") from exc
