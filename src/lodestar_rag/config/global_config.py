"""lodestar_rag.config.global_config

YAML-backed settings for the indexing and retrieval core.

The file is read once with :func:`yaml.safe_load`; ``${VAR}`` references in
any string value are replaced from the process environment before the data
reaches :class:`GlobalConfig`. Each top-level section is validated the first
time it is read and the result is cached on the instance.

Only ``embedder`` and ``vector_store`` are required. ``chunk_store``,
``splitter``, ``indexer``, ``retrieval`` and ``logging`` fall back to an empty
mapping so component defaults apply.
"""

import os
import yaml
from pathlib import Path
from functools import cached_property

_METRICS = {"cosine", "l2", "dot"}


def _expand_env(obj):
    """Substitute ``${VAR}`` references in every string of a loaded YAML tree.

    Dicts and lists are rebuilt with their values substituted; scalars other
    than strings pass through untouched. Unknown variables are left as
    written, which is how :func:`os.path.expandvars` behaves.
    """
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    if isinstance(obj, str):
        return os.path.expandvars(obj)
    return obj


def _positive_int(section: dict, key: str, name: str, *, allow_zero: bool = False) -> None:
    if key not in section:
        return
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"'{name}.{key}' must be an integer, got {type(value).__name__}.")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{name}.{key}' must be {'non-negative' if allow_zero else 'positive'}, got {value}.")


class GlobalConfig:
    """Validated view over the parsed configuration file.

    Parameters
    ----------
    raw : dict
        Parsed top-level mapping. ``None`` is treated as an empty file.
    config_path : Path, optional
        Absolute path to the loaded config file, used to resolve relative
        paths such as the chunk store ``persist_path``.
    """

    def __init__(
            self,
            raw: dict,
            config_path: Path | None = None,
        ):
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise TypeError(f"Configuration root must be a mapping, got {type(raw).__name__}.")
        self.raw = raw
        self.config_path = config_path

    @classmethod
    def load(
            cls,
            path: str | Path,
        ) -> "GlobalConfig":
        """Read ``path``, expand environment references and wrap the result.

        The resolved file path is kept on the instance so relative paths in
        the ``chunk_store`` section resolve against the config directory.
        """
        cfg_path = Path(path).expanduser().resolve()
        with cfg_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        data = _expand_env(data)
        return cls(data, config_path=cfg_path)

    def _optional_section(self, name: str) -> dict:
        section = self.raw.get(name)
        if section is None:
            return {}
        if not isinstance(section, dict):
            raise TypeError(f"'{name}' must be a mapping, got {type(section).__name__}.")
        return section

    def resolve_path(self, value: str | Path) -> Path:
        """Resolve ``value`` relative to the config file directory when it is relative."""
        p = Path(value).expanduser()
        if p.is_absolute() or self.config_path is None:
            return p
        return (self.config_path.parent / p).resolve()

    @cached_property
    def embedder(self) -> dict:
        """Return the embedder configuration section.

        Returns
        -------
        dict
            The ``embedder`` section of the configuration.

        Raises
        ------
        KeyError
            If ``embedder`` is missing from the configuration.
        TypeError
            If ``embedder`` is not a mapping.
        """
        section = self.raw.get("embedder")
        if section is None:
            raise KeyError("Missing 'embedder' in configuration.")
        if not isinstance(section, dict):
            raise TypeError("'embedder' must be a mapping.")
        return section

    @cached_property
    def vector_store(self) -> dict:
        """Return the vector store configuration section.

        Returns
        -------
        dict
            The ``vector_store`` section of the configuration.

        Raises
        ------
        KeyError
            If ``vector_store`` is missing from the configuration.
        TypeError
            If it is not a mapping or ``dimension`` is not an integer.
        ValueError
            If ``dimension`` is not positive or ``metric`` is unknown.
        """
        section = self.raw.get("vector_store")
        if section is None:
            raise KeyError("Missing 'vector_store' in configuration.")
        if not isinstance(section, dict):
            raise TypeError("'vector_store' must be a mapping.")

        _positive_int(section, "dimension", "vector_store")
        metric = section.get("metric")
        if metric is not None and str(metric).lower() not in _METRICS:
            raise ValueError(
                f"'vector_store.metric' must be one of {sorted(_METRICS)}, got {metric!r}."
            )
        return section

    @cached_property
    def chunk_store(self) -> dict:
        """Return the chunk store configuration section.

        Returns
        -------
        dict
            The ``chunk_store`` section, or an empty dict if not present. A
            relative ``persist_path`` is resolved against the config file
            directory.
        """
        section = dict(self._optional_section("chunk_store"))
        if section.get("persist_path"):
            section["persist_path"] = str(self.resolve_path(section["persist_path"]))
        return section

    @cached_property
    def splitter(self) -> dict:
        """Return the text splitter configuration section.

        Returns
        -------
        dict
            The ``splitter`` section, or an empty dict if not present.

        Raises
        ------
        TypeError
            If a size setting is not an integer.
        ValueError
            If ``chunk_size <= overlap`` or a size setting is out of range.
        """
        section = self._optional_section("splitter")
        _positive_int(section, "chunk_size", "splitter")
        _positive_int(section, "overlap", "splitter", allow_zero=True)
        _positive_int(section, "window", "splitter", allow_zero=True)
        _positive_int(section, "max_chunks", "splitter")

        chunk_size = section.get("chunk_size", 800)
        overlap = section.get("overlap", 100)
        if chunk_size <= overlap:
            raise ValueError(
                f"'splitter.chunk_size' ({chunk_size}) must be greater than 'splitter.overlap' ({overlap})."
            )
        return section

    @cached_property
    def indexer(self) -> dict:
        """Return the indexer configuration section.

        Returns
        -------
        dict
            The ``indexer`` section, or an empty dict if not present.

        Raises
        ------
        ValueError
            If ``worker_id`` or ``datacenter_id`` is outside ``[0, 31]``.
        """
        section = self._optional_section("indexer")
        _positive_int(section, "max_text_chars", "indexer")
        _positive_int(section, "embed_workers", "indexer")
        for key in ("worker_id", "datacenter_id"):
            _positive_int(section, key, "indexer", allow_zero=True)
            if section.get(key, 0) > 31:
                raise ValueError(f"'indexer.{key}' must be between 0 and 31.")
        return section

    @cached_property
    def retrieval(self) -> dict:
        """Return the retrieval configuration section.

        Returns
        -------
        dict
            The ``retrieval`` section, or an empty dict if not present.

        Raises
        ------
        ValueError
            If ``top_k`` or ``candidate_multiplier`` is not positive.
        """
        section = self._optional_section("retrieval")
        _positive_int(section, "top_k", "retrieval")
        _positive_int(section, "candidate_multiplier", "retrieval")
        return section

    @cached_property
    def logging(self) -> dict:
        """Return the logging configuration section.

        Returns
        -------
        dict
            The ``logging`` section, or an empty dict if not present.
        """
        return self._optional_section("logging")
