"""Build the media server's republishing configuration and deliver it.

The database holds the desired state; the media server holds the actual one.
``push`` is the only path from the former to the latter: it regenerates the
whole document from current rows, writes it to the server's configuration
file and then tries to make the server pick it up. Writing and reloading are
independent and both best-effort, so ``push`` never raises for media-server
trouble and may be repeated freely.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import MediaServerConfig
from .destinations import RepublishingDirectory
from .errors import ValidationError
from .media_server import MediaServerClient
from .models import DestinationSpec, DestinationStatus, RepublishingDestination, RepublishRule, StreamStatus
from .notifier import Notifier
from .registry import StreamRegistry

logger = logging.getLogger(__name__)

SEGMENT_DURATION_SECONDS = 6
SEGMENT_CHUNK_COUNT = 4
BACKUP_RETENTION = 5


class ReloadMethod(str, Enum):
    SIGNAL = "signal"
    SERVICE_MANAGER = "service_manager"
    HTTP_CONTROL = "http_control"


@dataclass
class PushResult:
    document: Dict[str, Any]
    written: bool
    backup_path: Optional[str] = None
    reload_method: Optional[ReloadMethod] = None

    @property
    def reloaded(self) -> bool:
        return self.reload_method is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config": self.document,
            "written": self.written,
            "backup_path": self.backup_path,
            "reloaded": self.reloaded,
            "reload_method": self.reload_method.value if self.reload_method else None,
        }


def _rule_for(destination: RepublishingDestination, src_app: str, src_stream: str) -> RepublishRule:
    return RepublishRule(
        id=destination.id,
        src_app=src_app,
        src_stream=src_stream,
        dest_addr=destination.destination_url,
        dest_port=destination.destination_port or 1935,
        dest_app=destination.destination_app,
        dest_stream=destination.destination_stream,
    )


class ConfigSynthesizer:
    """Derives the media server configuration from live streams and their destinations."""

    def __init__(
        self,
        registry: StreamRegistry,
        directory: RepublishingDirectory,
        client: MediaServerClient,
        config: MediaServerConfig,
        notifier: Optional[Notifier] = None,
    ):
        self.registry = registry
        self.directory = directory
        self.client = client
        self.config = config
        self.notifier = notifier
        self.config_path = Path(config.config_path)

    def collect_rules(self) -> List[RepublishRule]:
        rules: List[RepublishRule] = []
        live_streams = sorted(
            self.registry.list_live(), key=lambda stream: (stream.started_at or stream.created_at, stream.id)
        )
        for stream in live_streams:
            enabled = [destination for destination in self.directory.list(stream.id) if destination.enabled]
            logger.debug("Stream %s has %d enabled destinations", stream.id, len(enabled))
            for destination in enabled:
                rules.append(_rule_for(destination, stream.source_app or "live", stream.stream_key))
        return rules

    def synthesize(self) -> Dict[str, Any]:
        rules = self.collect_rules()
        stamp = str(int(time.time() * 1000))
        document = {
            "listener": {
                "hash": stamp,
                "interfaces": [{"ip": "*", "port": int(self.config.rtmp_port), "ssl": False}],
                "durationSeconds": SEGMENT_DURATION_SECONDS,
                "chunkCount": SEGMENT_CHUNK_COUNT,
            },
            "republishRules": {
                "hash": stamp,
                "rules": [rule.to_document() for rule in rules],
            },
            "ruleCount": len(rules),
        }
        logger.info("Synthesized configuration with %d republishing rules", len(rules))
        return document

    @staticmethod
    def validate(document: Dict[str, Any]) -> None:
        if not isinstance(document, dict):
            raise ValidationError("configuration must be an object")
        if "listener" not in document:
            raise ValidationError("configuration is missing listener settings")
        rules = document.get("republishRules")
        if not isinstance(rules, dict) or not isinstance(rules.get("rules"), list):
            raise ValidationError("configuration is missing republishRules.rules")

    def write(self, document: Dict[str, Any]) -> Optional[str]:
        """Replace the configuration file, keeping a timestamped copy of the previous one."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        backup_path = None
        if self.config_path.exists():
            stamp = int(time.time() * 1000)
            existing = self.backups()
            if existing:
                # keep suffixes increasing when several writes land in the same millisecond
                stamp = max(stamp, self._stamp_of(existing[-1]) + 1)
            backup = self._backup_path(stamp)
            shutil.copyfile(self.config_path, backup)
            backup_path = str(backup)
            logger.info("Backed up media server configuration to %s", backup_path)
            self.prune_backups()

        staging = self.config_path.with_name(f"{self.config_path.name}.tmp")
        staging.write_text(json.dumps(document, indent=2), encoding="utf-8")
        os.replace(staging, self.config_path)
        logger.info("Media server configuration written to %s", self.config_path)
        return backup_path

    def _backup_path(self, stamp: int) -> Path:
        return self.config_path.with_name(f"{self.config_path.name}.backup.{stamp}")

    def _stamp_of(self, path: Path) -> int:
        return int(path.name.rsplit(".", 1)[1])

    def backups(self) -> List[Path]:
        """Configuration backups, oldest first."""
        prefix = f"{self.config_path.name}.backup."
        found = [
            path
            for path in self.config_path.parent.glob(f"{prefix}*")
            if path.name[len(prefix):].isdigit()
        ]
        return sorted(found, key=self._stamp_of)

    def prune_backups(self, keep: int = BACKUP_RETENTION) -> None:
        for path in self.backups()[:-keep]:
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Failed to remove old configuration backup %s: %s", path, exc)
            else:
                logger.debug("Removed old configuration backup %s", path)

    def current_config(self) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(self.config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read current media server config: %s", exc)
            return None

    def _run(self, command: Sequence[str]) -> None:
        subprocess.run(  # noqa: S603
            list(command), check=True, capture_output=True, timeout=self.config.reload_timeout
        )

    def reload_probes(self) -> List[Tuple[ReloadMethod, Callable[[], Any]]]:
        return [
            (ReloadMethod.SIGNAL, lambda: self._run(["pkill", "-HUP", self.config.process_name])),
            (ReloadMethod.SERVICE_MANAGER, lambda: self._run(["systemctl", "reload", self.config.service_name])),
            (ReloadMethod.HTTP_CONTROL, self.client.request_reload),
        ]

    def reload(self) -> Optional[ReloadMethod]:
        """Try each reload mechanism in order; the first that succeeds wins."""
        for method, probe in self.reload_probes():
            try:
                probe()
            except Exception as exc:  # noqa: BLE001
                logger.info("Reload via %s failed (%s), trying next method", method.value, exc)
                continue
            logger.info("Media server configuration reloaded via %s", method.value)
            return method
        logger.warning("All reload methods failed; configuration stays inactive until the media server restarts")
        return None

    def push(self) -> PushResult:
        document = self.synthesize()
        self.validate(document)
        result = PushResult(document=document, written=False)
        try:
            result.backup_path = self.write(document)
            result.written = True
        except OSError as exc:
            logger.error("Failed to write media server configuration: %s", exc)
        result.reload_method = self.reload()
        if result.written and not result.reloaded and self.notifier:
            self.notifier.notify(
                subject="Media server configuration not reloaded",
                message=f"Wrote {document['ruleCount']} rules to {self.config_path} but no reload method succeeded.",
            )
        return result

    def add_destination(self, stream_id: str, spec: DestinationSpec) -> RepublishingDestination:
        """Record a destination and register its rule on the media server right away.

        The directory row is the durable record; if the direct registration
        fails the next full ``push`` picks the destination up.
        """
        stream = self.registry.get(stream_id)
        destination = self.directory.create_for_platform(stream, spec)
        if not destination.enabled:
            return destination
        rule = _rule_for(destination, stream.source_app or "live", stream.stream_key)
        try:
            created = self.client.create_rule(rule)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to register destination %s on media server: %s", destination.id, exc)
            return destination

        rule_id = created.get("id") if isinstance(created, dict) else None
        if rule_id:
            destination = self.directory.update(destination.id, {"external_rule_id": str(rule_id)})
        logger.info("Destination %s registered on media server (rule %s)", destination.id, rule_id)
        return destination

    def remove_destination(self, destination_id: str) -> RepublishingDestination:
        destination = self.directory.get(destination_id)
        stream = self.registry.get(destination.stream_id)
        self.directory.update_status(destination_id, DestinationStatus.INACTIVE.value)
        removed = self.directory.delete(destination_id)
        if removed.external_rule_id:
            try:
                self.client.delete_rule(removed.external_rule_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to delete media server rule %s: %s", removed.external_rule_id, exc)
        if stream.status == StreamStatus.LIVE.value:
            self.push()
        return removed

    def start_republishing(self, stream_id: str) -> int:
        """Push configuration for a stream that just went live and activate its destinations."""
        self.push()
        started = 0
        for destination in self.directory.list(stream_id):
            if not destination.enabled:
                continue
            try:
                self.directory.update_status(destination.id, DestinationStatus.ACTIVE.value)
                started += 1
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to start republishing to %s: %s", destination.destination_name, exc)
                self.directory.update_status(destination.id, DestinationStatus.ERROR.value, error=str(exc))
        logger.info("Started republishing stream %s to %d destinations", stream_id, started)
        return started

    def stop_republishing(self, stream_id: str) -> List[RepublishingDestination]:
        self.push()
        return self.directory.bulk_set_status(stream_id, DestinationStatus.INACTIVE.value)
