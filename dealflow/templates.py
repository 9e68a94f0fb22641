"""Versioned template catalog."""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from .contracts import Template
from .errors import TemplateNotFound, ValidationError

logger = logging.getLogger(__name__)


class TemplateStore:
    """Holds every version of every template in memory.

    Versions are immutable; ``put`` always appends a new one.
    """

    def __init__(self) -> None:
        self._versions: Dict[str, List[Template]] = {}

    def put(self, template: Template) -> Template:
        """Store ``template`` as the next version of its id."""
        history = self._versions.setdefault(template.id, [])
        stored = template.model_copy(update={"version": len(history) + 1})
        history.append(stored)
        logger.info(f"Stored template {stored.id} version {stored.version}")
        return stored

    def get(self, template_id: str, version: Optional[int] = None) -> Template:
        history = self._versions.get(template_id)
        if not history:
            raise TemplateNotFound(template_id)
        if version is None:
            return history[-1]
        if version < 1 or version > len(history):
            raise TemplateNotFound(template_id, version)
        return history[version - 1]

    def exists(self, template_id: str) -> bool:
        return template_id in self._versions

    def set_active(self, template_id: str, active: bool) -> Template:
        current = self.get(template_id)
        return self.put(current.model_copy(update={"is_active": active}))

    def list(self) -> List[Template]:
        """Return the latest version of each template."""
        return [history[-1] for history in self._versions.values()]

    def load(self, path: str) -> List[Template]:
        """Load a YAML catalog of the form ``templates: [ {...}, ... ]``."""
        if not os.path.exists(path):
            raise ValidationError(f"Template catalog not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("templates", []) if isinstance(data, dict) else data
        loaded = []
        for entry in entries:
            try:
                template = Template.model_validate(entry)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid template in {path}: {e}") from e
            loaded.append(self.put(template))
        return loaded
