"""
Segmentation - Segment and Scoring Engine

Classifies profiles against declarative segments and weighted scorings and
keeps every stored profile's membership and score fields consistent as
definitions change.

Usage as library:
    from segmentation import SegmentService, create_maintenance_scheduler

    service = SegmentService(persistence, definitions, rules, events)
    service.refresh_definitions()
    service.set_segment_definition(segment)
    result = service.classify(profile)

    scheduler = create_maintenance_scheduler(service)
    await scheduler.start()

Usage as CLI:
    python -m segmentation check ./definitions
    python -m segmentation dependents ./definitions vip
    python -m segmentation rule-keys ./definitions --event-type eventTypeCondition

Package structure:
    segmentation/
    ├── core/            # Config, logging, errors, retry
    ├── models.py        # Definitions, profiles, result values
    ├── interfaces.py    # Collaborator protocols
    ├── conditions.py    # Condition tree utilities
    ├── dependencies.py  # Dependency impact analysis
    ├── rules.py         # Auto-generated counting rules
    ├── cache.py         # Definition cache
    ├── pipeline.py      # Bulk profile update pipeline
    ├── scheduler.py     # Maintenance scheduler
    ├── loader.py        # Predefined definition files
    └── service.py       # Public service
"""

__version__ = "1.0.0"

from .cache import DefinitionCache, DefinitionSnapshot
from .core import (
    BadConditionError,
    BadScoringConditionError,
    BadSegmentConditionError,
    MaintenanceError,
    SegmentationError,
    SegmentationSettings,
    get_settings,
)
from .models import (
    Condition,
    DependentMetadata,
    Metadata,
    Profile,
    Rule,
    Scoring,
    ScoringElement,
    Segment,
    SegmentsAndScores,
)
from .scheduler import MaintenanceScheduler, create_maintenance_scheduler
from .service import SegmentService

__all__ = [
    "__version__",
    # Service
    "SegmentService",
    "DefinitionCache",
    "DefinitionSnapshot",
    "MaintenanceScheduler",
    "create_maintenance_scheduler",
    # Models
    "Condition",
    "DependentMetadata",
    "Metadata",
    "Profile",
    "Rule",
    "Scoring",
    "ScoringElement",
    "Segment",
    "SegmentsAndScores",
    # Errors and config
    "BadConditionError",
    "BadScoringConditionError",
    "BadSegmentConditionError",
    "MaintenanceError",
    "SegmentationError",
    "SegmentationSettings",
    "get_settings",
]
