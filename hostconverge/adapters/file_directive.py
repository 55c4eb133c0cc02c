"""
Configuration-file directives, e.g. `Port 2222` in sshd_config.

Identity is "<file>:<Directive>"; the value is the directive's argument
string, or None when the directive is absent. Only the global part of the
file (everything before the first `Match` block) is read or edited.

Every edit is staged in a temporary file next to the live one, checked by
the file's syntax validator, and only then moved into place.
"""

import logging
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional

from hostconverge.adapters.base import ResourceAdapter, persist_copy
from hostconverge.backends.base import ConfigValidator, PortListener
from hostconverge.backends.system import write_atomic
from hostconverge.errors import ApplyError, ValidationError
from hostconverge.models.plan import AppliedChange, Backup, Operation
from hostconverge.models.resource import ManagedFile, Resource, ResourceKind

logger = logging.getLogger(__name__)

_MATCH_BLOCK = re.compile(r"^\s*Match\s", re.IGNORECASE)


def _pattern(directive: str) -> "re.Pattern":
    return re.compile(
        rf"^\s*(?P<comment>#+)?\s*{re.escape(directive)}(?=[\s=]|$)(?P<rest>.*)$",
        re.IGNORECASE,
    )


def _global_end(lines: List[str]) -> int:
    for i, line in enumerate(lines):
        if _MATCH_BLOCK.match(line):
            return i
    return len(lines)


def read_directive(text: str, directive: str) -> Optional[str]:
    """Argument of the first active occurrence of `directive`, None when absent."""
    lines = text.splitlines()
    pattern = _pattern(directive)
    for line in lines[:_global_end(lines)]:
        match = pattern.match(line)
        if match and not match.group("comment"):
            return match.group("rest").strip().lstrip("=").strip()
    return None


def set_directive(text: str, directive: str, value: Optional[str], separator: str = " ") -> str:
    """
    Return `text` with `directive` set to `value`.

    Active occurrences are replaced; with none, the first commented-out
    occurrence is; with neither, the line goes before the first Match block
    (or at the end). A value of None comments out every active occurrence.
    """
    lines = text.splitlines()
    end = _global_end(lines)
    pattern = _pattern(directive)

    active, commented = [], []
    for i in range(end):
        match = pattern.match(lines[i])
        if match:
            (commented if match.group("comment") else active).append(i)

    if value is None:
        for i in active:
            lines[i] = "#" + lines[i].lstrip()
    else:
        new_line = f"{directive}{separator}{value}"
        if active:
            for i in active:
                lines[i] = new_line
        elif commented:
            lines[commented[0]] = new_line
        else:
            lines.insert(end, new_line)

    return "\n".join(lines) + "\n" if lines else ""


class FileDirectiveAdapter(ResourceAdapter):
    kind = ResourceKind.FILE_DIRECTIVE

    def __init__(
        self,
        validators: Optional[Dict[str, ConfigValidator]] = None,
        listener: Optional[PortListener] = None,
        verify_timeout_seconds: float = 10.0,
        poll_interval: float = 0.5,
        root: Optional[str] = None,
    ):
        self.validators = validators or {}
        self.root = root                    # Re-roots managed paths, e.g. for a sandbox
        self.listener = listener
        self.verify_timeout_seconds = verify_timeout_seconds
        self.poll_interval = poll_interval

    def _path(self, managed: ManagedFile) -> Path:
        if self.root:
            return Path(self.root) / managed.path.lstrip("/")
        return Path(managed.path)

    @staticmethod
    def _managed(resource: Resource) -> ManagedFile:
        return ManagedFile(**resource.options["file"])

    @staticmethod
    def _directive(resource: Resource) -> str:
        return resource.options.get("directive") or resource.identity.partition(":")[2]

    @staticmethod
    def _current_text(path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    def _read(self, resource: Resource):
        text = self._current_text(self._path(self._managed(resource)))
        if text is None:
            return None
        return read_directive(text, self._directive(resource))

    def _render(self, resource: Resource, value: Optional[str]) -> str:
        managed = self._managed(resource)
        text = self._current_text(self._path(managed)) or ""
        return set_directive(text, self._directive(resource), value, managed.separator)

    def _stage(self, path: Path, content: str) -> str:
        if self.root:
            path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        if path.exists():
            shutil.copymode(str(path), tmp)
        return tmp

    def _check(self, managed: ManagedFile, staged: str) -> None:
        """Raise ValidationError when the staged file fails the syntax check."""
        if not managed.validator:
            return
        validator = self.validators.get(managed.validator)
        if validator is None:
            raise ValidationError(
                f"No validator registered for {managed.name}: {managed.validator}"
            )
        ok, message = validator.check(staged)
        if not ok:
            raise ValidationError(f"{managed.validator} rejected {managed.name}: {message}")

    def validate(self, resource: Resource) -> bool:
        managed = self._managed(resource)
        path = self._path(managed)
        try:
            staged = self._stage(path, self._render(resource, resource.desired_value))
        except OSError as e:
            raise ValidationError(f"Cannot stage {path}: {e}") from e
        try:
            self._check(managed, staged)
        except ValidationError as e:
            logger.warning("Pre-flight check failed for %s: %s", resource.key, e)
            return False
        finally:
            os.unlink(staged)
        return True

    def _backup_content(self, operation: Operation) -> dict:
        path = self._path(self._managed(operation.resource))
        return {
            "content": self._current_text(path),
            "path": persist_copy(str(path)),
        }

    def _apply(self, operation: Operation, backup: Backup) -> None:
        resource = operation.resource
        managed = self._managed(resource)
        path = self._path(managed)
        current = self._current_text(path) or ""
        candidate = self._render(resource, operation.desired)
        if candidate == current:
            return

        staged = self._stage(path, candidate)
        try:
            self._check(managed, staged)
        except ValidationError as e:
            os.unlink(staged)
            raise ApplyError(str(e)) from e
        os.replace(staged, str(path))

    def _restore(self, change: AppliedChange) -> None:
        path = self._path(self._managed(change.operation.resource))
        content = change.backup.content
        if content is None:
            if path.exists():
                path.unlink()
            return
        if self._current_text(path) != content:
            write_atomic(path, content)

    def _listening(self, port: int) -> bool:
        deadline = time.monotonic() + self.verify_timeout_seconds
        while not self.listener.is_listening(port):
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)
        return True

    def verify(self, operation: Operation) -> bool:
        if not super().verify(operation):
            return False
        managed = self._managed(operation.resource)
        directive = self._directive(operation.resource)
        if (
            self.listener is not None
            and operation.desired is not None
            and managed.listen_directive
            and directive.lower() == managed.listen_directive.lower()
        ):
            try:
                port = int(operation.desired)
            except ValueError:
                return False
            if not self._listening(port):
                logger.warning("%s: nothing listening on port %s", operation.key, port)
                return False
        return True
