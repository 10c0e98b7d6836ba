"""Error taxonomy shared by the run pipeline, the status endpoint and saved plans."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class CheffyError(RuntimeError):
    """Base class for every error raised by cheffy services."""

    code = "internal_error"

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class InvalidInput(CheffyError, ValueError):
    code = "invalid_input"


class StorageUnavailable(CheffyError):
    """The run store is not configured or cannot be reached."""

    code = "storage_unavailable"


class RunNotFound(CheffyError):
    code = "run_not_found"


class StructureInvalid(CheffyError):
    """A provider answered, but the answer does not have the required shape."""

    code = "structure_invalid"


class ProviderFailure(CheffyError):
    """Every generation provider in the chain failed."""

    code = "provider_failure"

    def __init__(self, message: str, attempts: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.attempts = list(attempts or [])

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["attempts"] = self.attempts
        return detail


class ProductMatchFailure(CheffyError):
    """No usable catalog product for one ingredient. Never fatal to a run."""

    code = "product_match_failure"

    def __init__(self, ingredient: str, reason: str) -> None:
        super().__init__(f"{ingredient}: {reason}")
        self.ingredient = ingredient
        self.reason = reason


class PhaseOrderingFault(CheffyError):
    code = "phase_ordering_fault"


class RunAlreadyFinished(PhaseOrderingFault):
    code = "run_already_finished"


class PlanNotFound(CheffyError):
    code = "plan_not_found"
