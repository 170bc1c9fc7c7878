"""
Property Stage Pipeline

Applies the three keep/required policies of a decorator:

- pre-merge (``sourceProps``): on the undecorated layer, before any lookup
- store-record (``redisProps``): on each fetched record, before merge
- post-merge (``outputProps``): on the decorated layer

Layer stages drop whole features on ``required`` and project tags on
``keep``. The record stage never drops features: a record missing a
required field is discarded and its feature is left as it was.
"""

from typing import Any, Dict, List, Optional

import structlog

from ..config import StageConfig
from .tag_codec import filter_features_missing_keys, select_keys


def record_has_required(record: Dict[str, Any], required) -> bool:
    return all(name in record for name in required)


def project_record(record: Dict[str, Any], keep) -> Dict[str, Any]:
    return {name: record[name] for name in keep if name in record}


class PropertyStagePipeline:
    """Keep/required policies for one decorator, fixed at construction."""

    def __init__(
        self,
        source_props: Optional[StageConfig] = None,
        redis_props: Optional[StageConfig] = None,
        output_props: Optional[StageConfig] = None
    ):
        self.source_props = source_props or StageConfig()
        self.redis_props = redis_props or StageConfig()
        self.output_props = output_props or StageConfig()
        self.logger = structlog.get_logger(component="PropertyStagePipeline")

    def _apply_layer_stage(self, layer, stage: StageConfig, stage_name: str) -> int:
        removed = 0
        if stage.required is not None:
            removed = filter_features_missing_keys(layer, stage.required)
            if removed:
                self.logger.debug(
                    "Dropped features missing required properties",
                    stage=stage_name,
                    required=list(stage.required),
                    removed=removed
                )
        if stage.keep is not None:
            select_keys(layer, stage.keep)
        return removed

    def apply_pre_merge(self, layer) -> int:
        """
        Apply ``sourceProps`` to the undecorated layer.

        Returns:
            Number of features removed
        """
        return self._apply_layer_stage(layer, self.source_props, "sourceProps")

    def apply_post_merge(self, layer) -> int:
        """
        Apply ``outputProps`` to the decorated layer.

        Returns:
            Number of features removed
        """
        return self._apply_layer_stage(layer, self.output_props, "outputProps")

    def filter_record(self, record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Apply ``redisProps`` to one record; None means "do not merge"."""
        if record is None:
            return None

        required = self.redis_props.required
        if required is not None and not record_has_required(record, required):
            return None

        keep = self.redis_props.keep
        if keep is not None:
            record = project_record(record, keep)
        return record

    def filter_records(self, records: List[Optional[Dict[str, Any]]]) -> List[Optional[Dict[str, Any]]]:
        """Apply ``redisProps`` to records aligned with the layer's features."""
        return [self.filter_record(record) for record in records]
