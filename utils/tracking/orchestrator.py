"""
Detection passes.

A pass pulls the whitelist, the user's path and every candidate chain,
scores each chain independently, then looks for suspicious shadows among
the devices no chain detection covered. Surviving detections become
alerts, throttled per canonical device. At most one pass runs at a time;
a pass that finds another in flight returns immediately as skipped.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import replace
from typing import Callable, Optional

from utils import database as db
from utils.mqtt import mqtt_publish

from .alerts import build_details, build_message, build_reason, build_title
from .config import DetectionConfig, load_config
from .constants import LAST_PASS_PREFIX
from .exceptions import ComputationError, ConfigurationError, TransientStorageError
from .models import (
    AlertRecord,
    Detection,
    DetectionPassResult,
    DeviceChain,
    ScoreBreakdown,
    ThreatLevel,
    UserPathPoint,
    now_ms,
)
from .scoring import distinct_locations, score
from .shadows import ShadowResult, find_suspicious_shadows

logger = logging.getLogger('tailguard.detection')

Publisher = Callable[[str, dict], bool]


class DetectionOrchestrator:
    """Runs detection passes and owns the single-pass lock."""

    def __init__(
        self,
        clock: Callable[[], int] = now_ms,
        publisher: Optional[Publisher] = mqtt_publish,
    ):
        self._clock = clock
        self._publisher = publisher
        self._pass_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    def run_detection_pass(
        self,
        config: Optional[DetectionConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DetectionPassResult:
        """
        Run one detection pass.

        Args:
            config: Configuration to use; pulled from settings when omitted.
            cancel_event: Checked between devices. Work already committed
                stays committed.

        Returns:
            DetectionPassResult. ``skipped`` is set when another pass holds
            the lock.

        Raises:
            ConfigurationError: Before any read or write, on invalid config.
            TransientStorageError: When the candidate list cannot be read or
                the store stays locked. The pass is safe to re-run.
        """
        try:
            config = config.validate() if config is not None else load_config()
        except ConfigurationError as e:
            logger.error(f"Detection pass rejected, invalid configuration: {e}")
            raise

        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Detection pass already running, skipping")
            return DetectionPassResult(skipped=True)

        started = time.monotonic()
        result = DetectionPassResult()
        try:
            logger.info("Detection pass started")
            detections = self._collect(config, cancel_event, result)
            result.detections_found = len(detections)

            for detection in detections:
                if _cancelled(cancel_event):
                    result.cancelled = True
                    break
                alert = self._alert(detection, config)
                if alert is not None:
                    result.alerts_generated.append(alert.id)

            result.elapsed_ms = int((time.monotonic() - started) * 1000)
            self._persist(result)
        finally:
            self._pass_lock.release()

        logger.info(
            f"Detection pass finished: {result.detections_found} detections, "
            f"{len(result.alerts_generated)} alerts, {len(result.failed_devices)} failed, "
            f"{result.elapsed_ms} ms{' (cancelled)' if result.cancelled else ''}"
        )
        self._publish('detection_pass', result.to_dict())
        return result

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _collect(
        self,
        config: DetectionConfig,
        cancel_event: Optional[threading.Event],
        result: DetectionPassResult,
    ) -> list[Detection]:
        try:
            whitelisted = db.get_whitelisted_device_ids()
            user_path = db.get_user_path()
            chains = db.get_candidate_chains(config.min_location_count)
        except sqlite3.DatabaseError as e:
            raise TransientStorageError(f'Cannot read detection candidates: {e}') from e

        detections = []
        for chain in chains:
            if _cancelled(cancel_event):
                result.cancelled = True
                break
            if whitelisted.intersection(chain.member_ids):
                continue

            try:
                detection = self.evaluate_chain(chain, user_path, config)
            except TransientStorageError:
                raise
            except Exception as e:
                error = ComputationError(chain.canonical.id, str(e), e)
                logger.error(f"Scoring failed: {error}", exc_info=True)
                result.failed_devices.append(chain.canonical.id)
                continue

            if detection is not None:
                detections.append(detection)

        if not result.cancelled:
            detections += self._collect_shadows(config, cancel_event, result, whitelisted, user_path, detections)

        detections.sort(key=lambda d: (-d.breakdown.total, d.device_id))
        return detections

    def _collect_shadows(
        self,
        config: DetectionConfig,
        cancel_event: Optional[threading.Event],
        result: DetectionPassResult,
        whitelisted: set[int],
        user_path: list[UserPathPoint],
        detections: list[Detection],
    ) -> list[Detection]:
        """Shadow detections for devices the chain pass did not already cover."""
        try:
            shadows = find_suspicious_shadows(config.min_location_count, whitelisted)
        except sqlite3.DatabaseError as e:
            raise TransientStorageError(f'Cannot read shadow candidates: {e}') from e

        covered = {d.device_id for d in detections} | set(result.failed_devices)
        found = []
        for shadow in shadows:
            if _cancelled(cancel_event):
                result.cancelled = True
                break
            if covered.intersection(shadow.root_ids):
                logger.debug(f"Shadow {shadow.shadow_key} already covered by a chain detection")
                continue

            try:
                detection = self.evaluate_shadow(shadow, user_path, config)
            except TransientStorageError:
                raise
            except Exception as e:
                device_id = shadow.primary_chain.canonical.id
                error = ComputationError(device_id, str(e), e)
                logger.error(f"Shadow scoring failed: {error}", exc_info=True)
                result.failed_devices.append(device_id)
                continue

            covered.update(shadow.root_ids)
            if detection is not None:
                logger.info(f"Shadow detection: {detection.reason}")
                found.append(detection)
        return found

    def evaluate_chain(
        self,
        chain: DeviceChain,
        user_path: list[UserPathPoint],
        config: DetectionConfig,
    ) -> Optional[Detection]:
        """Score a chain and keep it only if it clears every threshold."""
        sightings = db.get_chain_sightings(chain)
        breakdown = score(chain, sightings, user_path, config)
        if not _clears_thresholds(breakdown, config):
            return None

        return Detection(
            chain=chain,
            breakdown=breakdown,
            location_ids=sorted(distinct_locations(sightings)),
            reason=build_reason(chain, breakdown),
        )

    def evaluate_shadow(
        self,
        shadow: ShadowResult,
        user_path: list[UserPathPoint],
        config: DetectionConfig,
    ) -> Optional[Detection]:
        """
        Score every chain of a shadow as one device.

        Sightings outside the representative's own chain count as WEAK.
        The total is the mean of the chain score and the shadow's combined
        score, and the threat level follows the blended total.
        """
        chain = shadow.group_chain()
        sightings = shadow.group_sightings(db.get_chain_sightings(chain))
        base = score(chain, sightings, user_path, config)
        blended = (base.total + shadow.combined_score) / 2.0
        breakdown = replace(base, total=blended, threat_level=ThreatLevel.from_score(blended))
        if not _clears_thresholds(breakdown, config):
            return None

        reason = (
            f"{build_reason(chain, breakdown)} Shadow detection: "
            f"persistence={shadow.persistence_score:.2f}, rotation={shadow.rotation_score:.2f}."
        )
        return Detection(
            chain=chain,
            breakdown=breakdown,
            location_ids=sorted(distinct_locations(sightings)),
            reason=reason,
            shadow=shadow.to_dict(),
        )

    # -------------------------------------------------------------------------
    # Alerting
    # -------------------------------------------------------------------------

    def _is_throttled(self, detection: Detection, now: int, config: DetectionConfig) -> bool:
        recent = db.get_recent_active_alerts(detection.device_id, now - config.throttle_window_ms)
        if not recent:
            return False
        highest = max(alert.level.rank for alert in recent)
        return detection.breakdown.threat_level.rank <= highest

    def _alert(self, detection: Detection, config: DetectionConfig) -> Optional[AlertRecord]:
        now = self._clock()
        level = detection.breakdown.threat_level
        if self._is_throttled(detection, now, config):
            logger.debug(f"Alert for device {detection.device_id} throttled at {level.value}")
            return None

        alert = db.insert_alert(
            device_id=detection.device_id,
            created_at=now,
            level=level,
            title=build_title(level),
            message=build_message(detection),
            device_addresses=detection.chain.addresses,
            location_ids=detection.location_ids,
            threat_score=detection.breakdown.total,
            breakdown=detection.breakdown.to_dict(),
            details=build_details(detection),
        )
        logger.info(
            f"Alert {alert.id}: device {detection.device_id} {level.value} "
            f"score={detection.breakdown.total:.3f}"
        )
        self._publish('alerts', alert.to_dict())
        return alert

    def _persist(self, result: DetectionPassResult) -> None:
        db.set_settings({
            LAST_PASS_PREFIX + 'detections_found': result.detections_found,
            LAST_PASS_PREFIX + 'alerts_generated': len(result.alerts_generated),
            LAST_PASS_PREFIX + 'elapsed_ms': result.elapsed_ms,
            LAST_PASS_PREFIX + 'completed_at': self._clock(),
        })

    def _publish(self, topic: str, payload: dict) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher(topic, payload)
        except Exception as e:
            logger.warning(f"Failed to publish {topic}: {e}")


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _clears_thresholds(breakdown: ScoreBreakdown, config: DetectionConfig) -> bool:
    if breakdown.effective_location_count < config.min_location_count:
        return False
    if breakdown.max_distance_m < config.min_detection_distance_m:
        return False
    return breakdown.threat_level != ThreatLevel.NONE and breakdown.total >= config.min_threat_score


def score_device(device_id: int, config: Optional[DetectionConfig] = None) -> Optional[ScoreBreakdown]:
    """Score the chain a device belongs to, without alerting."""
    config = config.validate() if config is not None else load_config()
    chain = db.get_chain(device_id)
    if chain is None:
        return None
    return score(chain, db.get_chain_sightings(chain), db.get_user_path(), config)


# =============================================================================
# SINGLETON ORCHESTRATOR INSTANCE
# =============================================================================

_orchestrator: Optional[DetectionOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> DetectionOrchestrator:
    """Get the shared orchestrator. The single-pass rule holds per instance."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = DetectionOrchestrator()
        return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = None


def run_detection_pass(
    config: Optional[DetectionConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> DetectionPassResult:
    """Convenience wrapper around the shared orchestrator."""
    return get_orchestrator().run_detection_pass(config, cancel_event)
