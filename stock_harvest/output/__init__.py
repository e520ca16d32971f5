from .load import UpsertGateway
from .quality import run_quality_checks

__all__ = [
    "UpsertGateway",
    "run_quality_checks",
]
