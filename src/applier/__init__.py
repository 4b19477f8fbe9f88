"""Apply/status engine for desired object sets."""

from .applier import ApplyReport, Applier, apply_and_report

__all__ = ["ApplyReport", "Applier", "apply_and_report"]
