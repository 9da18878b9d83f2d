from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from chatrelay.logging import get_logger

logger = get_logger(__name__)

TIER_FREE = "free"
TIER_PRO = "pro"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    short_name: str
    provider: str
    tier: str
    features: Tuple[str, ...] = field(default_factory=tuple)
    max_tokens: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["features"] = list(self.features)
        return data


FREE_MODEL = ModelDescriptor(
    id="openai/gpt-4.1-nano",
    display_name="GPT-4.1 Nano",
    short_name="GPT-4.1 Nano",
    provider="openai",
    tier=TIER_FREE,
    features=("chat", "fast-response"),
    max_tokens=4096,
)

PAID_MODELS: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="google/gemini-2.0-flash-001",
        display_name="Gemini 2.0 Flash",
        short_name="Gemini 2.0",
        provider="google",
        tier=TIER_PRO,
        features=("chat", "advanced-reasoning", "multimodal"),
        max_tokens=8192,
    ),
    ModelDescriptor(
        id="openai/gpt-5-nano",
        display_name="GPT-5 Nano",
        short_name="GPT-5 Nano",
        provider="openai",
        tier=TIER_PRO,
        features=("chat", "fast-response", "improved-reasoning"),
        max_tokens=8192,
    ),
)

ALL_MODELS: Tuple[ModelDescriptor, ...] = (FREE_MODEL, *PAID_MODELS)


class ModelRegistry:
    """Static model catalogue with default resolution.

    Lookups never fail: unknown ids resolve to the default descriptor, and
    anonymous subjects always get the default regardless of what they ask for.
    """

    def __init__(
        self,
        models: Iterable[ModelDescriptor] = ALL_MODELS,
        *,
        default_model_id: str = FREE_MODEL.id,
    ) -> None:
        self._models: Dict[str, ModelDescriptor] = {m.id: m for m in models}
        default = self._models.get(default_model_id)
        if default is None:
            raise ValueError(f"default model {default_model_id} is not in the catalogue")
        if default.tier != TIER_FREE:
            raise ValueError(f"default model {default_model_id} must be free tier")
        self.default = default

    @property
    def default_model_id(self) -> str:
        return self.default.id

    def is_valid(self, model_id: Optional[str]) -> bool:
        return bool(model_id) and model_id in self._models

    def get_by_id(self, model_id: Optional[str]) -> ModelDescriptor:
        if model_id and model_id in self._models:
            return self._models[model_id]
        return self.default

    def is_pro(self, model_id: Optional[str]) -> bool:
        return self.get_by_id(model_id).tier == TIER_PRO

    def validate(self, model_id: Optional[str], is_anonymous: bool) -> str:
        if is_anonymous:
            return self.default.id
        if not self.is_valid(model_id):
            if model_id:
                logger.info("model_id_normalized", requested=model_id, resolved=self.default.id)
            return self.default.id
        return model_id  # type: ignore[return-value]

    def list_models(self, *, include_pro: bool = True) -> List[ModelDescriptor]:
        return [m for m in self._models.values() if include_pro or m.tier == TIER_FREE]


__all__ = [
    "ModelDescriptor",
    "ModelRegistry",
    "FREE_MODEL",
    "PAID_MODELS",
    "ALL_MODELS",
    "TIER_FREE",
    "TIER_PRO",
]
