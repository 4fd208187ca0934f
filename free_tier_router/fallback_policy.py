from __future__ import annotations

from collections.abc import Iterable

from free_tier_router.errors import PremiumModelError


class ModelFallbackPolicy:
    def __init__(
        self,
        allowed_models: Iterable[str],
        default_model: str | None = None,
    ) -> None:
        self._allowed = _dedupe_preserving_order(
            model.strip() for model in allowed_models if model and model.strip()
        )
        if not self._allowed:
            raise ValueError("At least one allowed model is required.")
        self._default_model = (default_model or "").strip() or self._allowed[0]
        if self._default_model not in self._allowed:
            raise ValueError(
                f"Default model '{self._default_model}' is not an allowed model."
            )

    @property
    def allowed_models(self) -> list[str]:
        return list(self._allowed)

    @property
    def default_model(self) -> str:
        return self._default_model

    def is_allowed(self, model: str) -> bool:
        return model in self._allowed

    def resolve(self, requested_model: str | None) -> list[str]:
        """Attempt order for a request: requested model first, then the rest.

        Raises ``PremiumModelError`` for a model outside the allow-list; that
        is a policy boundary, so no fallback is attempted.
        """
        model = (requested_model or "").strip() or self._default_model
        if not self.is_allowed(model):
            raise PremiumModelError(model, self._allowed)
        return _dedupe_preserving_order([model, *self._allowed])


def _dedupe_preserving_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output
