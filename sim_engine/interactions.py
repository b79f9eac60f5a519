"""
Interaction Resolver — applies source → target equations to a register snapshot.
"""

from typing import Optional

from loguru import logger

from sim_config.errors import ExpressionError
from sim_config.ontology import ParameterInteraction
from .expressions import ExpressionEvaluator, default_evaluator


class InteractionResolver:
    """
    Applies enabled interactions once per tick, in configuration order.

    Each interaction reads the current value of its source (including writes
    made by earlier interactions in the same pass) and overwrites its target.
    Cycles are not iterated: every interaction runs at most once per pass.
    """

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None):
        self.evaluator = evaluator or default_evaluator()
        self.diagnostics: dict[str, str] = {}

    def apply(self, registers: dict[str, float],
              interactions: list[ParameterInteraction]) -> dict[str, float]:
        """Return an updated copy of `registers`; failures leave the target untouched."""
        result = dict(registers)
        previous, self.diagnostics = self.diagnostics, {}

        for interaction in interactions:
            if not interaction.enabled:
                continue

            source = result.get(interaction.source_parameter)
            if source is None:
                self._flag(interaction, f"source parameter '{interaction.source_parameter}' has no value", previous)
                continue

            try:
                value = self.evaluator.equation(
                    interaction.equation, source, result.get(interaction.target_parameter))
            except ExpressionError as exc:
                self._flag(interaction, str(exc), previous)
                continue

            result[interaction.target_parameter] = value

        return result

    def _flag(self, interaction: ParameterInteraction, message: str, previous: dict[str, str]):
        self.diagnostics[interaction.id] = message
        # Only log when the problem first appears, not on every tick
        if previous.get(interaction.id) != message:
            logger.warning(f"Interaction '{interaction.name or interaction.id}' skipped: {message}")
