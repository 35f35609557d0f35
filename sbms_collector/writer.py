"""Writes processed frames to a sink."""

import json
import logging
from typing import Any, Dict

from .metrics import (
    CommonMetrics,
    MetricsPlan,
    compute_balancing_aggregate,
    compute_common,
    energy_kwh,
)
from .models import Frame, flatten
from .sink import Sink

logger = logging.getLogger(__name__)


class FrameWriter:
    """Turns a Frame into sink values.

    One writer per acquisition session; it remembers whether the static
    device parameters have been written yet.
    """

    def __init__(self, sink: Sink, plan: MetricsPlan, source: str):
        """Initialize the writer.

        Args:
            sink: Destination for values.
            plan: Metric groups enabled for this session.
            source: Transport name used as prefix for detail values
                    (``html``, ``serial`` or ``mqtt``).
        """
        self.sink = sink
        self.plan = plan
        self.source = source
        self.parameters_written = False
        self.frames_written = 0

    async def _write_all(self, values: Dict[str, Any]) -> None:
        for path, value in values.items():
            await self.sink.write_value(path, value)

    async def write_frame(self, frame: Frame) -> CommonMetrics:
        """Compute metrics for ``frame`` and write everything it carries.

        With ``plan.supplement_only`` the live states are left to the
        primary transport and only energy counters, parameters and detail
        are written.
        """
        telemetry = frame.telemetry
        balancing = frame.balancing
        balancing_active = balancing.any_active if balancing else False

        metrics = compute_common(telemetry, balancing_active, self.plan)
        if not self.plan.supplement_only:
            await self._write_states(metrics, frame)

        if frame.energy:
            await self._write_all(energy_kwh(frame.energy, self.plan))

        if not self.parameters_written and (frame.identity or frame.profile):
            await self.write_parameters(frame)

        if self.plan.full_message:
            await self.write_detail(frame)

        self.frames_written += 1
        return metrics

    async def _write_states(self, metrics: CommonMetrics, frame: Frame) -> None:
        await self._write_all(metrics.as_dict())
        await self._write_flags(metrics)

        balancing = frame.balancing
        if balancing:
            aggregate = compute_balancing_aggregate(balancing, frame.telemetry.cells_millivolt)
            for index, (millivolt, active) in aggregate.per_cell.items():
                await self.sink.write_value(f"cells.{index}.balancing", active)
                await self.sink.write_value(f"balancing.{index}.voltage", millivolt)
                await self.sink.write_value(f"balancing.{index}.active", active)
            await self._write_all({
                "balancing.anyActive": aggregate.any_active,
                "balancing.activeCount": aggregate.active_count,
                "balancing.max": aggregate.max,
                "balancing.min": aggregate.min,
                "balancing.maxID": aggregate.max_index,
                "balancing.minID": aggregate.min_index,
            })

        # Voltage spread during balancing is expected, so the extremes are
        # only published while no cell is balancing.
        if metrics.cells is not None:
            await self._write_all({
                "cells.min": metrics.cells.min,
                "cells.min.ID": metrics.cells.min_index,
                "cells.max": metrics.cells.max,
                "cells.max.ID": metrics.cells.max_index,
                "cells.delta": metrics.cells.delta,
            })

    async def _write_flags(self, metrics: CommonMetrics) -> None:
        summary = metrics.flags
        for name, active in summary.info.items():
            await self.sink.write_value(f"flags.info.{name}", active)
        for name, active in summary.errors.items():
            await self.sink.write_value(f"flags.errors.{name}", active)

        await self._write_all({
            "flags.errors.errorActive": summary.error_active,
            "flags.errors.errorCount": summary.error_count,
            "flags.errors.activeErrors": (
                json.dumps(summary.active_errors) if summary.active_errors else "none"
            ),
        })

    async def write_parameters(self, frame: Frame) -> None:
        """Static device parameters, written once per session."""
        if frame.identity:
            await self.sink.write_value("parameter.model", frame.identity.model)
        if frame.profile:
            await self._write_all({
                "parameter.type": frame.profile.chemistry_type,
                "parameter.capacity": frame.profile.capacity_ah,
                "parameter.cvmin": frame.profile.under_voltage_lock_mv,
                "parameter.cvmax": frame.profile.over_voltage_lock_mv,
            })
        self.parameters_written = True
        logger.info(
            f"Device parameters written "
            f"(model: {frame.identity.model if frame.identity else 'unknown'})"
        )

    async def write_detail(self, frame: Frame) -> None:
        """Every decoded field under ``<source>.<variable>``."""
        records = {
            "sbms": frame.telemetry,
            "s1": frame.identity,
            "s2": frame.balancing,
            "eW": frame.energy,
            "xsbms": frame.profile,
        }
        for variable, record in records.items():
            if record is None:
                continue
            for path, value in flatten(f"{self.source}.{variable}", record):
                await self.sink.write_value(path, value)

    async def record_integrity(self, ok: bool) -> None:
        """Count checksum results when detail output is enabled."""
        if not self.plan.full_message:
            return
        name = "crcSuccessCount" if ok else "crcErrorCount"
        await self.sink.increment_counter(f"{self.source}.{name}")
