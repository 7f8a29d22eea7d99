# engine/planner/exceptions.py

from engine.exceptions import CumulusError


class PlannerError(CumulusError):
    """Base class for cluster plan errors"""


class QuotaConfigurationError(PlannerError):
    pass


class InvalidWorkerShape(PlannerError):
    pass


class InvalidPlan(PlannerError):
    pass


class CostLimitExceeded(PlannerError):
    pass
