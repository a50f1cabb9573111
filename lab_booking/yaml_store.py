from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar
import shutil

import yaml

from .errors import BookingStorageError
from .models import (
    ClosureRule,
    EditProposal,
    Lab,
    OperatingHoursRule,
    RecurrencePattern,
    Reservation,
    Workstation,
)
from .repository import InMemoryBookingRepository


M = TypeVar("M")


class BookingYamlRepository(InMemoryBookingRepository):
    """File-backed repository: one YAML list per collection plus an event log.

    Every transaction reloads the files first and rewrites them on commit, so
    the in-memory dicts are only a working copy for the current unit of work.
    """

    def __init__(self, base_dir: str | Path = "data") -> None:
        super().__init__()
        self.base_dir = Path(base_dir)
        self.labs_file = self.base_dir / "labs.yaml"
        self.workstations_file = self.base_dir / "workstations.yaml"
        self.operating_hours_file = self.base_dir / "operating_hours.yaml"
        self.closures_file = self.base_dir / "closures.yaml"
        self.reservations_file = self.base_dir / "reservations.yaml"
        self.patterns_file = self.base_dir / "recurring_patterns.yaml"
        self.proposals_file = self.base_dir / "edit_proposals.yaml"
        self.log_file = self.base_dir / "booking_events.yaml"
        self._ensure_files()
        self._load()

    def _data_files(self) -> tuple[Path, ...]:
        return (
            self.labs_file,
            self.workstations_file,
            self.operating_hours_file,
            self.closures_file,
            self.reservations_file,
            self.patterns_file,
            self.proposals_file,
        )

    def _ensure_files(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        for path in (*self._data_files(), self.log_file):
            if not path.exists():
                path.write_text("[]\n", encoding="utf-8")

    def _begin(self) -> None:
        super()._begin()
        self._load()
        self._loaded = self._snapshot()

    def _commit(self) -> None:
        if any(getattr(self, name) != self._loaded[name] for name in self._COLLECTIONS):
            self._write_collections()
        if self._pending_events:
            events = self._read_yaml_list(self.log_file)
            events.extend(self._pending_events)
            self._write_yaml_list(self.log_file, events)
        super()._commit()

    def _write_collections(self) -> None:
        """Replace every collection file, or none of them.

        All rows are staged to temp files first. Originals are copied aside
        before any replace, and restored if one of the replaces fails.
        """
        collections = [
            (self.labs_file, [row.to_dict() for row in self.list_labs()]),
            (
                self.workstations_file,
                [row.to_dict() for row in sorted(self.workstations.values(), key=lambda row: row.workstation_id)],
            ),
            (self.operating_hours_file, [rule.to_dict() for _, rule in sorted(self.operating_hours.items())]),
            (self.closures_file, [row.to_dict() for row in self.closures]),
            (
                self.reservations_file,
                [row.to_dict() for row in sorted(self.reservations.values(), key=lambda row: (row.start, row.reservation_id))],
            ),
            (self.patterns_file, [row.to_dict() for row in self.patterns.values()]),
            (self.proposals_file, [row.to_dict() for row in self.proposals.values()]),
        ]
        staged: list[tuple[Path, Path]] = []
        backups: list[tuple[Path, Path]] = []
        try:
            for path, rows in collections:
                staged.append((path, self._stage_yaml_list(path, rows)))
            try:
                for path, _ in staged:
                    backup_path = path.with_suffix(path.suffix + ".bak")
                    shutil.copy2(path, backup_path)
                    backups.append((path, backup_path))
                for path, temp_path in staged:
                    temp_path.replace(path)
            except OSError as error:
                for path, backup_path in backups:
                    backup_path.replace(path)
                backups = []
                raise BookingStorageError(f"Failed to write YAML files in {self.base_dir}") from error
        finally:
            for _, leftover in (*staged, *backups):
                leftover.unlink(missing_ok=True)

    def _load(self) -> None:
        self.labs = {row.lab_id: row for row in self._read_models(self.labs_file, Lab.from_dict)}
        self.workstations = {
            row.workstation_id: row for row in self._read_models(self.workstations_file, Workstation.from_dict)
        }
        self.operating_hours = {
            (rule.lab_id, rule.weekday): rule
            for rule in self._read_models(self.operating_hours_file, OperatingHoursRule.from_dict)
        }
        self.closures = self._read_models(self.closures_file, ClosureRule.from_dict)
        self.reservations = {
            row.reservation_id: row for row in self._read_models(self.reservations_file, Reservation.from_dict)
        }
        self.patterns = {
            row.recurring_group_id: row
            for row in self._read_models(self.patterns_file, RecurrencePattern.from_dict)
            if row.recurring_group_id
        }
        self.proposals = {
            row.proposal_id: row for row in self._read_models(self.proposals_file, EditProposal.from_dict)
        }

    def _read_models(self, path: Path, parse: Callable[[dict[str, Any]], M]) -> list[M]:
        models: list[M] = []
        for index, row in enumerate(self._read_yaml_list(path)):
            try:
                models.append(parse(row))
            except (KeyError, TypeError, ValueError) as error:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {"file": str(path.name), "index": index, "reason": str(error)},
                )
        return models

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            elif path != self.log_file:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _stage_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> Path:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            raise BookingStorageError(f"Failed to write YAML file: {path}") from error
        return temp_path

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise BookingStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            pass

        path.write_text("[]\n", encoding="utf-8")
        if path != self.log_file:
            self._log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        """Write a storage event straight to the log, outside any transaction."""
        timestamp = (event_time or datetime.now()).isoformat(timespec="seconds")
        events = self._read_yaml_list(self.log_file)
        events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
        self._write_yaml_list(self.log_file, events)

    def read_events(self) -> list[dict[str, Any]]:
        return self._read_yaml_list(self.log_file)
