from .analyzer import GeminiImpactExtractor
from .migration import EvidenceIdsMigrationTask
from .sweeper import OrphanSweeperTask, purge_all_collections

__all__ = ['GeminiImpactExtractor', 'EvidenceIdsMigrationTask', 'OrphanSweeperTask', 'purge_all_collections']
