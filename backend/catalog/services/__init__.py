from . import catalog
from .accounting import AggregateStats, compute_stats
from .content_store import ContentStore, DjangoContentStore, get_content_store
from .filtering import FilterSpec, evaluate
from .visibility import VisibilityController, visibility_controller

__all__ = [
    'catalog',
    'AggregateStats',
    'compute_stats',
    'ContentStore',
    'DjangoContentStore',
    'get_content_store',
    'FilterSpec',
    'evaluate',
    'VisibilityController',
    'visibility_controller',
]
