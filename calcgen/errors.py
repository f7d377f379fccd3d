from typing import List, Optional


class CalcGenError(ValueError):
    pass


class MalformedPlanError(CalcGenError):
    """The generator output is not a plan object at all."""


class PlanValidationError(CalcGenError):
    pass


class GeneratorError(CalcGenError):
    pass


class RuntimeCheckError(CalcGenError):
    """
    Raised by the runtime checker.

    `phase` is "syntax" or "semantic"; `issues` holds every problem found,
    the message only the first few so it stays usable as a retry hint.
    """

    def __init__(self, phase: str, issues: List[str], magnitude: Optional[str] = None):
        self.phase = phase
        self.issues = list(issues)
        self.magnitude = magnitude
        head = "; ".join(self.issues[:4])
        more = f" (+{len(self.issues) - 4} more)" if len(self.issues) > 4 else ""
        where = f"{phase}/{magnitude}" if magnitude else phase
        super().__init__(f"runtime check failed [{where}]: {head}{more}")
