"""Dispatch engine -- recurrence expansion, activation and filtering for microgrid dispatches.

Pure domain code with no I/O:

* **types** -- immutable dispatch, selector and recurrence value objects.
* **recurrence** -- lazy occurrence expansion and end-time computation.
* **activation** -- PENDING / ACTIVE / INACTIVE_EXPIRED / DISABLED evaluation.
* **filters** -- list-filter predicates.
* **updates** -- field-mask partial updates.
"""

from .errors import (
    DispatchError,
    FailedPrecondition,
    Internal,
    InvalidArgument,
    NotFound,
    ResourceExhausted,
)
from .types import (
    ComponentCategories,
    ComponentCategory,
    ComponentIds,
    ComponentSelector,
    Count,
    Dispatch,
    DispatchData,
    DispatchMetadata,
    DispatchUpdate,
    EndCriteria,
    Frequency,
    RecurrenceRule,
    RecurrenceUpdate,
    Until,
    Weekday,
)
from .recurrence import compute_end_time, occurrences
from .activation import ActivationState, evaluate_activation
from .filters import DispatchFilter, RecurrenceFilter, TimeInterval, matches
from .updates import apply_update

__all__ = [
    "DispatchError",
    "FailedPrecondition",
    "Internal",
    "InvalidArgument",
    "NotFound",
    "ResourceExhausted",
    "ComponentCategories",
    "ComponentCategory",
    "ComponentIds",
    "ComponentSelector",
    "Count",
    "Dispatch",
    "DispatchData",
    "DispatchMetadata",
    "DispatchUpdate",
    "EndCriteria",
    "Frequency",
    "RecurrenceRule",
    "RecurrenceUpdate",
    "Until",
    "Weekday",
    "compute_end_time",
    "occurrences",
    "ActivationState",
    "evaluate_activation",
    "DispatchFilter",
    "RecurrenceFilter",
    "TimeInterval",
    "matches",
    "apply_update",
]
