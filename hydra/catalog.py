"""Known models and the provider each one is served by."""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from hydra.models import Candidate

AUTO_MODEL_ID = "auto-best"
AUTO_MODEL_TARGET = "gemini-3-flash-preview"


@dataclass(frozen=True)
class ModelSpec:
    id: str
    provider: str
    name: str
    context_limit: int

    @property
    def candidate(self) -> Candidate:
        return Candidate(provider=self.provider, model=self.id)


MODEL_CATALOG: List[ModelSpec] = [
    ModelSpec("gemini-3-flash-preview", "GEMINI", "Gemini 3 Flash", 1000000),
    ModelSpec("gemini-3-pro-preview", "GEMINI", "Gemini 3 Pro", 1000000),
    ModelSpec("gemini-2.0-flash-exp", "GEMINI", "Gemini 2.0 Flash", 1000000),
    ModelSpec("gemini-1.5-flash", "GEMINI", "Gemini 1.5 Flash", 1000000),
    ModelSpec("llama-3.3-70b-versatile", "GROQ", "Llama 3.3 70B", 128000),
    ModelSpec("llama-3.1-8b-instant", "GROQ", "Llama 3.1 8B", 128000),
    ModelSpec("gpt-4o-mini", "OPENAI", "GPT-4o Mini", 128000),
    ModelSpec("gpt-4o", "OPENAI", "GPT-4o", 128000),
    ModelSpec("deepseek-chat", "DEEPSEEK", "DeepSeek Chat", 64000),
    ModelSpec("mistral-medium", "MISTRAL", "Mistral Medium", 32000),
    ModelSpec("openrouter/auto", "OPENROUTER", "OpenRouter Auto", 128000),
]

DEFAULT_FALLBACK_MODELS: Tuple[str, ...] = (
    "gemini-3-flash-preview",
    "llama-3.3-70b-versatile",
    "gemini-3-pro-preview",
)

RACE_CANDIDATES: Dict[str, Candidate] = {
    "GOOGLE": Candidate("GEMINI", "gemini-2.0-flash-exp"),
    "GROQ_70B": Candidate("GROQ", "llama-3.3-70b-versatile"),
    "GROQ_8B": Candidate("GROQ", "llama-3.1-8b-instant"),
    "OPENAI_MINI": Candidate("OPENAI", "gpt-4o-mini"),
    "DEEPSEEK": Candidate("DEEPSEEK", "deepseek-chat"),
}


def find_model(model_id: str, catalog: Optional[List[ModelSpec]] = None) -> Optional[ModelSpec]:
    for spec in catalog if catalog is not None else MODEL_CATALOG:
        if spec.id == model_id:
            return spec
    return None


def resolve_candidate(model_id: str, catalog: Optional[List[ModelSpec]] = None) -> Candidate:
    """Map a model id to its candidate; unknown ids use the first catalog entry."""
    entries = catalog if catalog is not None else MODEL_CATALOG
    spec = find_model(model_id, entries)
    if spec is None:
        spec = entries[0]
    return spec.candidate
