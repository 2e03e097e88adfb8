"""Operator policy store backed by a YAML file.

The acceptance guards, the download worker and the playback orchestrator
read rules through PolicyStore.get_rules(). The file is re-read whenever its
modification time changes, so edits made by hand or through the operator
operations below take effect on the next read without a restart.

    rules.yaml → yaml.safe_load → PolicyRules.model_validate → callers

Invalid files never take the queue down: YAML or validation errors are
logged and the last good rules (or the defaults) stay in effect.
"""

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from mediaqueue.exceptions import ConfigurationError
from mediaqueue.schemas.policy import PolicyRules

log = structlog.get_logger()


class PolicyStore:
    """Loads, caches and persists PolicyRules."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._rules = PolicyRules()
        self._loaded_mtime: float | None = None

    @property
    def path(self) -> Path:
        return self._path

    def get_rules(self) -> PolicyRules:
        """Return current rules, reloading the file if it changed on disk."""
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            if self._loaded_mtime is not None:
                log.warning("rules_file_removed", file=str(self._path))
                self._rules = PolicyRules()
                self._loaded_mtime = None
            return self._rules

        if mtime != self._loaded_mtime:
            loaded = self._load_file()
            if loaded is not None:
                self._rules = loaded
            self._loaded_mtime = mtime
        return self._rules

    def _load_file(self) -> PolicyRules | None:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw_rules = yaml.safe_load(f)

            if raw_rules is None:
                log.warning("rules_file_empty", file=str(self._path))
                return PolicyRules()

            rules = PolicyRules.model_validate(raw_rules)
            log.info(
                "rules_loaded",
                file=str(self._path),
                custom_sites=len(rules.custom_sites),
                ng_users=len(rules.ng_user_ids),
            )
            return rules

        except yaml.YAMLError as e:
            line_num = None
            if hasattr(e, "problem_mark") and e.problem_mark is not None:
                line_num = e.problem_mark.line

            log.error("rules_yaml_parse_error", file=str(self._path), error=str(e), line=line_num)
            return None

        except ValidationError as e:
            log.error("rules_validation_error", file=str(self._path), errors=e.errors())
            return None

    def _save(self, rules: PolicyRules) -> PolicyRules:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as f:
                yaml.safe_dump(
                    rules.model_dump(mode="json"),
                    f,
                    allow_unicode=True,
                    sort_keys=False,
                )
            self._loaded_mtime = self._path.stat().st_mtime
        except OSError as e:
            raise ConfigurationError(f"cannot write rules file {self._path}: {e}") from e
        self._rules = rules
        log.info("rules_saved", file=str(self._path))
        return rules

    def update_rules(self, **changes: Any) -> PolicyRules:
        """Validate and persist a partial update.

        Raises:
            pydantic.ValidationError: If the merged rules are invalid.
            ConfigurationError: If the file cannot be written.
        """
        merged = {**self.get_rules().model_dump(), **changes}
        return self._save(PolicyRules.model_validate(merged))

    def add_ng_user(self, user_id: str) -> PolicyRules:
        rules = self.get_rules()
        return self.update_rules(ng_user_ids=[*rules.ng_user_ids, user_id])

    def remove_ng_user(self, user_id: str) -> PolicyRules:
        target = user_id.strip()
        rules = self.get_rules()
        return self.update_rules(ng_user_ids=[u for u in rules.ng_user_ids if u != target])

    def clear_ng_users(self) -> PolicyRules:
        return self.update_rules(ng_user_ids=[])
