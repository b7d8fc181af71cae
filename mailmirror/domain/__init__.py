"""Pure domain logic: models, categorization, merging and filtering."""

from . import categories, filters, merge, models

__all__ = ["categories", "filters", "merge", "models"]
