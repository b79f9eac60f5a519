"""Error taxonomy shared by the configuration store and the simulation engine."""


class SimulationError(Exception):
    """Base class for every error raised by the simulator."""


class ExpressionError(SimulationError):
    """A condition or equation could not be parsed or evaluated."""

    def __init__(self, message: str, expression: str = ""):
        super().__init__(message)
        self.expression = expression


class ConfigurationValidationError(SimulationError):
    pass


class EngineStateError(SimulationError):
    pass


class ActionDispatchError(SimulationError):
    """An alarm action could not be delivered to its collaborator."""

    def __init__(self, message: str, rule_id: str = "", action_type: str = ""):
        super().__init__(message)
        self.rule_id = rule_id
        self.action_type = action_type
