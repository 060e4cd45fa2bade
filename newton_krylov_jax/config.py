"""Configuration for the Newton-Krylov step.

Algorithmic settings are read once, at construction, from a nested
parameter mapping such as::

    {
        "General": {
            "Print Verbosity": 1,
            "Secant": {"Use as Preconditioner": True, "Type": "Limited-Memory BFGS"},
            "Krylov": {"Type": "Conjugate Gradients", "Iteration Limit": 50},
        }
    }

Unknown keys are ignored and missing keys take their defaults. Unknown
method names, or values of the wrong type, raise ``ConfigurationError``.
"""

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# sqrt of float64 machine epsilon, the accuracy requested from inexact evaluators
DEFAULT_EVALUATION_TOLERANCE = 1.4901161193847656e-08


class ConfigurationError(ValueError):
    """The step configuration is invalid."""


class KrylovType(enum.Enum):
    """Krylov methods available for the inner Newton solve."""

    CONJUGATE_GRADIENTS = "Conjugate Gradients"
    CONJUGATE_RESIDUALS = "Conjugate Residuals"
    USER_DEFINED = "User Defined"


class SecantType(enum.Enum):
    """Secant approximations available as preconditioners."""

    LIMITED_MEMORY_BFGS = "Limited-Memory BFGS"
    BARZILAI_BORWEIN = "Barzilai-Borwein"
    USER_DEFINED = "User Defined"


def _parse_enum(enum_cls: type[enum.Enum], value: Any, key: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    for member in enum_cls:
        if isinstance(value, str) and value.strip().lower() == member.value.lower():
            return member
    valid = ", ".join(repr(m.value) for m in enum_cls)
    raise ConfigurationError(f"Unknown value {value!r} for {key!r}; expected one of {valid}")


def _get(sublist: Mapping[str, Any], name: str, default: Any, kind: type, key: str) -> Any:
    value = sublist.get(name, default)
    # bool is a subclass of int, so it has to be rejected explicitly
    if kind is not bool and isinstance(value, bool):
        raise ConfigurationError(f"{key!r} must be {kind.__name__}, got {value!r}")
    if kind is float and isinstance(value, int):
        value = float(value)
    if not isinstance(value, kind):
        raise ConfigurationError(f"{key!r} must be {kind.__name__}, got {value!r}")
    return value


def _sublist(parlist: Mapping[str, Any], name: str, key: str) -> Mapping[str, Any]:
    sub = parlist.get(name, {})
    if not isinstance(sub, Mapping):
        raise ConfigurationError(f"{key!r} must be a mapping, got {type(sub).__name__}")
    return sub


@dataclass(frozen=True)
class StepConfig:
    """Immutable settings of a Newton-Krylov step.

    Attributes:
        krylov_type: Krylov method used for the inner solve.
        secant_type: Secant approximation used for preconditioning.
        use_secant_preconditioner: Precondition the Krylov solve with the
            secant approximation instead of the objective's preconditioner.
        verbosity: Print verbosity; values above zero add a legend to the header.
        krylov_absolute_tolerance: Absolute residual tolerance of the solve.
        krylov_relative_tolerance: Residual tolerance relative to the gradient norm.
        krylov_iteration_limit: Maximum number of Krylov iterations.
        secant_storage: Number of (s, y) pairs kept by the secant.
        barzilai_borwein_type: Barzilai-Borwein variant (1 or 2).
        evaluation_tolerance: Accuracy requested from inexact objective evaluations.
    """

    krylov_type: KrylovType = KrylovType.CONJUGATE_GRADIENTS
    secant_type: SecantType = SecantType.LIMITED_MEMORY_BFGS
    use_secant_preconditioner: bool = False
    verbosity: int = 0
    krylov_absolute_tolerance: float = 1e-4
    krylov_relative_tolerance: float = 1e-2
    krylov_iteration_limit: int = 100
    secant_storage: int = 10
    barzilai_borwein_type: int = 1
    evaluation_tolerance: float = DEFAULT_EVALUATION_TOLERANCE

    def __post_init__(self):
        if self.krylov_iteration_limit < 1:
            raise ConfigurationError("Krylov iteration limit must be at least 1")
        if self.secant_storage < 1:
            raise ConfigurationError("Secant maximum storage must be at least 1")
        if self.barzilai_borwein_type not in (1, 2):
            raise ConfigurationError("Barzilai-Borwein type must be 1 or 2")

    @classmethod
    def from_parameters(cls, parlist: Mapping[str, Any]) -> "StepConfig":
        """Parse a nested parameter mapping into a ``StepConfig``.

        Args:
            parlist: Nested mapping with a ``"General"`` sublist.

        Returns:
            The resolved configuration.

        Raises:
            ConfigurationError: If a method name is unknown or a value has
                the wrong type.
        """
        general = _sublist(parlist, "General", "General")
        secant = _sublist(general, "Secant", "General.Secant")
        krylov = _sublist(general, "Krylov", "General.Krylov")

        config = cls(
            krylov_type=_parse_enum(
                KrylovType,
                krylov.get("Type", KrylovType.CONJUGATE_GRADIENTS.value),
                "General.Krylov.Type",
            ),
            secant_type=_parse_enum(
                SecantType,
                secant.get("Type", SecantType.LIMITED_MEMORY_BFGS.value),
                "General.Secant.Type",
            ),
            use_secant_preconditioner=_get(
                secant,
                "Use as Preconditioner",
                False,
                bool,
                "General.Secant.Use as Preconditioner",
            ),
            verbosity=_get(general, "Print Verbosity", 0, int, "General.Print Verbosity"),
            krylov_absolute_tolerance=_get(
                krylov, "Absolute Tolerance", 1e-4, float, "General.Krylov.Absolute Tolerance"
            ),
            krylov_relative_tolerance=_get(
                krylov, "Relative Tolerance", 1e-2, float, "General.Krylov.Relative Tolerance"
            ),
            krylov_iteration_limit=_get(
                krylov, "Iteration Limit", 100, int, "General.Krylov.Iteration Limit"
            ),
            secant_storage=_get(
                secant, "Maximum Storage", 10, int, "General.Secant.Maximum Storage"
            ),
            barzilai_borwein_type=_get(
                secant,
                "Barzilai-Borwein Type",
                1,
                int,
                "General.Secant.Barzilai-Borwein Type",
            ),
        )
        logger.debug("Resolved Newton-Krylov configuration: %s", config)
        return config
