"""Workflow configuration loader."""

import copy
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.clustering.config import ClusteringStageConfig
from ..core.preprocessing.config import PreprocessingConfig

SECTIONS = ("pipeline", "global", "inputs", "checkpoints", "figures", "preprocessing", "analysis")

MAX_TEMPLATE_DEPTH = 16

DEFAULTS: Dict[str, Any] = {
    "pipeline": {"name": "dropseq_atlas", "version": "1.0"},
    "global": {"output_dir": "output", "log_level": "INFO"},
    "inputs": {},
    "checkpoints": {"enabled": True, "directory": "{global.output_dir}/checkpoints", "compression": "gzip"},
    "figures": {"enabled": True, "dpi": 150, "format": "png"},
}


class WorkflowConfig:
    """Loads and resolves a workflow YAML configuration.

    Sections
    --------
    pipeline : name and version of the run
    global : ``output_dir``, ``log_level`` and any values referenced by templates
    inputs : ``directory`` holding the matrix/genes/barcodes files, or the
        three explicit paths ``matrix``, ``genes`` and ``barcodes``
    checkpoints : ``enabled``, ``directory``, ``compression``
    figures : ``enabled``, ``dpi``, ``format``
    preprocessing : loader / qc / normalization thresholds
    analysis : reduction / clustering / de / merge parameters

    String values may reference other values as ``{global.data_dir}``.

    Parameters
    ----------
    raw_config : Dict[str, Any]
        Configuration dictionary
    config_path : Path, optional
        File the configuration was read from

    Example
    -------
    >>> config = WorkflowConfig.from_yaml("configs/retina.yaml")
    >>> config.output_dir
    PosixPath('output/retina')
    >>> config.preprocessing.qc.max_genes
    2000
    """

    def __init__(self, raw_config: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        raw_config = copy.deepcopy(raw_config or {})
        unknown = sorted(set(raw_config) - set(SECTIONS))
        if unknown:
            raise ValueError(f"Unknown configuration sections: {unknown} (expected {list(SECTIONS)})")

        merged = copy.deepcopy(DEFAULTS)
        for section, values in raw_config.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section].update(values)
            else:
                merged[section] = values
        self.raw_config = merged
        self.config_path = Path(config_path) if config_path else None

        self.preprocessing = PreprocessingConfig.from_dict(self.raw_config.get("preprocessing") or {})
        self.analysis = ClusteringStageConfig.from_dict(self.raw_config.get("analysis") or {})

    @classmethod
    def from_yaml(cls, path) -> "WorkflowConfig":
        """Load configuration from a YAML file.

        Raises
        ------
        FileNotFoundError
            If the file does not exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(data, config_path=path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowConfig":
        return cls(data)

    def resolve_paths(self, template: str) -> str:
        """Resolve ``{section.key}`` references in ``template``.

        Unresolvable references are left in place. References that resolve
        back to an earlier form of the template raise ``ValueError``.
        """
        if "{" not in template:
            return template

        def replace(match):
            value: Any = self.raw_config
            for part in match.group(1).split("."):
                if not isinstance(value, dict) or part not in value:
                    return match.group(0)
                value = value[part]
            if isinstance(value, (dict, list)) or value is None:
                return match.group(0)
            return str(value)

        seen = {template}
        resolved = re.sub(r"\{([^}]+)\}", replace, template)
        while resolved != template and "{" in resolved:
            if resolved in seen or len(seen) > MAX_TEMPLATE_DEPTH:
                raise ValueError(f"Circular path template reference in '{template}'")
            seen.add(resolved)
            template, resolved = resolved, re.sub(r"\{([^}]+)\}", replace, resolved)
        return resolved

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Value from a section with templates resolved."""
        value = (self.raw_config.get(section) or {}).get(key, default)
        if isinstance(value, str):
            return self.resolve_paths(value)
        return value

    @property
    def name(self) -> str:
        return str(self.get("pipeline", "name", "dropseq_atlas"))

    @property
    def output_dir(self) -> Path:
        return Path(self.get("global", "output_dir", "output"))

    @property
    def log_dir(self) -> Path:
        log_dir = self.get("global", "log_dir")
        return Path(log_dir) if log_dir else self.output_dir / "logs"

    @property
    def log_level(self) -> str:
        return str(self.get("global", "log_level", "INFO"))

    @property
    def input_paths(self) -> Dict[str, Path]:
        """Resolved input paths: ``directory`` or ``matrix``/``genes``/``barcodes``.

        Raises
        ------
        ValueError
            If neither a directory nor all three files are configured
        """
        inputs = {k: Path(self.get("inputs", k)) for k in self.raw_config.get("inputs", {})}
        if "directory" in inputs:
            return {"directory": inputs["directory"]}
        missing = [k for k in ("matrix", "genes", "barcodes") if k not in inputs]
        if missing:
            raise ValueError(
                "inputs must define 'directory' or all of matrix/genes/barcodes "
                f"(missing: {missing})"
            )
        return {k: inputs[k] for k in ("matrix", "genes", "barcodes")}

    @property
    def checkpoints_enabled(self) -> bool:
        return bool(self.get("checkpoints", "enabled", True))

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.get("checkpoints", "directory", str(self.output_dir / "checkpoints")))

    @property
    def checkpoint_compression(self) -> Optional[str]:
        return self.get("checkpoints", "compression", "gzip")

    @property
    def figures_enabled(self) -> bool:
        return bool(self.get("figures", "enabled", True))

    @property
    def figure_dpi(self) -> int:
        return int(self.get("figures", "dpi", 150))

    @property
    def figure_format(self) -> str:
        return str(self.get("figures", "format", "png"))

    def to_dict(self) -> Dict[str, Any]:
        """Resolved configuration as a dictionary."""

        def resolve(value):
            if isinstance(value, dict):
                return {k: resolve(v) for k, v in value.items()}
            if isinstance(value, str):
                return self.resolve_paths(value)
            return value

        data = {
            section: resolve(self.raw_config.get(section, {}))
            for section in ("pipeline", "global", "inputs", "checkpoints", "figures")
        }
        data["preprocessing"] = self.preprocessing.to_dict()
        data["analysis"] = self.analysis.to_dict()
        return data
