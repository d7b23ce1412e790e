import copy
import yaml
from typing import Dict, Any, Optional
from pathlib import Path

from burst_merge_backend.errors import ConfigurationError


DEFAULT_CONFIG: Dict[str, Any] = {
    'tile': {
        'size': 32,
        'overlap': 8,
    },
    'alignment': {
        'pyramid_levels': 3,
        'max_search_radius': 16,
        'refine_radius': 2,
        'rejection_threshold': 0.5,
        'upsampling_candidates': True,
        'finest_cost': 'l2',
    },
    'merge': {
        'algorithm': 'frequency',
        'kernel': 'bicubic',
        'weighting': 'wiener',
        'robustness': 8.0,
        'spatial_blur_sigma': 1.5,
    },
    'runtime': {
        'worker_count': None,
    },
}


class MergeConfig:
    """Configuration container for a burst merge."""

    def __init__(self, cfg: Optional[Dict[str, Any]] = None):
        cfg = cfg or {}
        tile_cfg = cfg.get('tile', {}) or {}
        align_cfg = cfg.get('alignment', {}) or {}
        merge_cfg = cfg.get('merge', {}) or {}
        runtime_cfg = cfg.get('runtime', {}) or {}

        # Tile grid
        self.tile_size = int(tile_cfg.get('size', 32))
        self.tile_overlap = int(tile_cfg.get('overlap', 8))

        # Alignment
        self.pyramid_levels = int(align_cfg.get('pyramid_levels', 3))
        self.max_search_radius = int(align_cfg.get('max_search_radius', 16))
        self.refine_radius = int(align_cfg.get('refine_radius', 2))
        self.rejection_threshold = float(align_cfg.get('rejection_threshold', 0.5))
        self.upsampling_candidates = bool(align_cfg.get('upsampling_candidates', True))
        self.finest_cost = str(align_cfg.get('finest_cost', 'l2') or 'l2').strip().lower()

        # Merge
        self.algorithm = str(merge_cfg.get('algorithm', 'frequency') or 'frequency').strip().lower()
        self.kernel = str(merge_cfg.get('kernel', 'bicubic') or 'bicubic').strip().lower()
        self.weighting = str(merge_cfg.get('weighting', 'wiener') or 'wiener').strip().lower()
        self.robustness = float(merge_cfg.get('robustness', 8.0))
        self.spatial_blur_sigma = float(merge_cfg.get('spatial_blur_sigma', 1.5))

        # Runtime
        wc = runtime_cfg.get('worker_count')
        self.worker_count = None if wc is None else int(wc)

    @classmethod
    def from_dict(cls, cfg: Optional[Dict[str, Any]]) -> "MergeConfig":
        return cls(cfg)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tile': {'size': self.tile_size, 'overlap': self.tile_overlap},
            'alignment': {
                'pyramid_levels': self.pyramid_levels,
                'max_search_radius': self.max_search_radius,
                'refine_radius': self.refine_radius,
                'rejection_threshold': self.rejection_threshold,
                'upsampling_candidates': self.upsampling_candidates,
                'finest_cost': self.finest_cost,
            },
            'merge': {
                'algorithm': self.algorithm,
                'kernel': self.kernel,
                'weighting': self.weighting,
                'robustness': self.robustness,
                'spatial_blur_sigma': self.spatial_blur_sigma,
            },
            'runtime': {'worker_count': self.worker_count},
        }

    def __repr__(self) -> str:
        return f"MergeConfig({self.to_dict()})"


class ConfigurationManager:
    """
    Manages configuration loading, validation, and processing
    """
    @classmethod
    def load_config(
        cls,
        config_path: Path,
        schema_path: Optional[Path] = None
    ) -> Dict[str, Any]:
        """
        Load and validate configuration from file

        Args:
            config_path: Path to YAML configuration file
            schema_path: Optional path to JSON schema (bundled schema otherwise)

        Returns:
            Configuration dictionary with defaults filled in

        Raises:
            ConfigurationError: file unreadable or validation errors
        """
        try:
            text = Path(config_path).read_text(encoding='utf-8')
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration {config_path}", e)

        cls.validate_config_text(text, schema_path)
        config = yaml.safe_load(text) or {}
        return cls._deep_update(copy.deepcopy(DEFAULT_CONFIG), config)

    @classmethod
    def validate_config_text(cls, yaml_text: str, schema_path: Optional[Path] = None) -> Dict[str, Any]:
        """
        Validate YAML text; raise ConfigurationError listing every error.

        Returns:
            The validation report (warnings included) when valid
        """
        from burst_merge_backend.validate import validate_config_yaml_text

        report = validate_config_yaml_text(yaml_text, None if schema_path is None else str(schema_path))
        if not report['valid']:
            details = '; '.join(f"{e['path']}: {e['message']}" for e in report['errors'])
            raise ConfigurationError(f"Configuration validation failed: {details}")
        return report

    @classmethod
    def generate_default_config(
        cls,
        output_path: Optional[Path] = None,
        base_config: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Generate a default configuration

        Args:
            output_path: Optional path to save the configuration as YAML
            base_config: Optional overrides merged into the defaults

        Returns:
            Generated configuration dictionary
        """
        default_config = copy.deepcopy(DEFAULT_CONFIG)

        if base_config:
            cls._deep_update(default_config, base_config)

        if output_path is not None:
            with open(output_path, 'w') as f:
                yaml.safe_dump(default_config, f, default_flow_style=False, sort_keys=False)

        return default_config

    @staticmethod
    def _deep_update(base_dict: Dict, update_dict: Dict) -> Dict:
        """
        Recursively update nested dictionaries

        Args:
            base_dict: Base dictionary to update
            update_dict: Dictionary with updates

        Returns:
            Updated dictionary
        """
        for key, value in update_dict.items():
            if isinstance(value, dict):
                base_dict[key] = base_dict.get(key, {}) or {}
                base_dict[key] = ConfigurationManager._deep_update(base_dict[key], value)
            else:
                base_dict[key] = value
        return base_dict


def load_merge_config(config_path: Path, schema_path: Optional[Path] = None) -> MergeConfig:
    """Load, validate and wrap a configuration file."""
    return MergeConfig(ConfigurationManager.load_config(config_path, schema_path))
