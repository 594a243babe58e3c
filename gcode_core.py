# -*- coding: utf-8 -*-
"""
gcode_core.py — оценка времени и расхода филамента по готовому G-code.

Это НЕ интерпретатор станка: отслеживается только то, что нужно для оценки —
позиция, значение экструдера, режимы G90/G91 и M82/M83, активная подача F.
Время идёт только от G0/G1; дуги, паузы и ускорения не учитываются.

Плохая строка не роняет разбор: её пропускаем (debug-лог) и идём дальше.
"""
from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional

from estimate_core import GCodeOverride

logger = logging.getLogger(__name__)

_PAREN_COMMENT_RE = re.compile(r"\(.*?\)")
_CHECKSUM_RE = re.compile(r"\*\d*\s*$")
AXES = ("X", "Y", "Z")


@dataclass(frozen=True)
class GcodeEstimate:
    time_s: float = 0.0
    filament_len_mm: float = 0.0
    extrusion_distance_mm: float = 0.0
    travel_distance_mm: float = 0.0

    def to_dict(self) -> dict:
        return {
            "time_s": self.time_s,
            "filament_len_mm": self.filament_len_mm,
            "extrusion_distance_mm": self.extrusion_distance_mm,
            "travel_distance_mm": self.travel_distance_mm,
        }


def _sanitize(line: str) -> str:
    s = _PAREN_COMMENT_RE.sub("", line)
    cut = s.find(";")
    if cut != -1:
        s = s[:cut]
    s = _CHECKSUM_RE.sub("", s)
    return s.strip()


def _parse_words(tokens) -> Dict[str, float]:
    args: Dict[str, float] = {}
    for tok in tokens:
        letter = tok[0].upper()
        try:
            value = float(tok[1:])
        except ValueError:
            continue
        if not math.isfinite(value):
            continue
        args[letter] = value
    return args


def parse_motion_program(text: Optional[str]) -> GcodeEstimate:
    """Текст G-code -> GcodeEstimate. Никогда не бросает на отдельной строке."""
    pos = {"X": 0.0, "Y": 0.0, "Z": 0.0}
    extruder = 0.0
    absolute_pos = True
    absolute_e = True
    feed_mm_min: Optional[float] = None

    time_s = 0.0
    filament = 0.0
    extrusion_dist = 0.0
    travel_dist = 0.0
    skipped = 0

    for lineno, raw in enumerate((text or "").splitlines(), start=1):
        line = _sanitize(raw)
        if not line:
            continue
        tokens = line.split()
        # N<номер строки> перед командой
        if tokens[0][:1] in ("N", "n") and len(tokens) > 1:
            tokens = tokens[1:]

        cmd = tokens[0].upper()
        try:
            letter, number = cmd[0], int(cmd[1:])
        except (IndexError, ValueError):
            skipped += 1
            logger.debug("gcode line %d skipped: %r", lineno, raw)
            continue
        args = _parse_words(tokens[1:])

        if letter == "G" and number == 90:
            absolute_pos = True
            continue
        if letter == "G" and number == 91:
            absolute_pos = False
            continue
        if letter == "G" and number == 92:
            for ax in AXES:
                if ax in args:
                    pos[ax] = args[ax]
            if "E" in args:
                extruder = args["E"]
            continue
        if letter == "M" and number == 82:
            absolute_e = True
            continue
        if letter == "M" and number == 83:
            absolute_e = False
            continue
        if not (letter == "G" and number in (0, 1)):
            continue

        if "F" in args:
            feed_mm_min = args["F"] if args["F"] > 0 else None

        nxt = dict(pos)
        for ax in AXES:
            if ax in args:
                nxt[ax] = args[ax] if absolute_pos else nxt[ax] + args[ax]

        delta_e = 0.0
        if "E" in args:
            if absolute_e:
                delta_e = args["E"] - extruder
                extruder = args["E"]
            else:
                delta_e = args["E"]
                extruder += args["E"]

        dist = math.sqrt(sum((nxt[ax] - pos[ax]) ** 2 for ax in AXES))
        if dist > 0 and feed_mm_min:
            time_s += dist / (feed_mm_min / 60.0)
        if delta_e > 0:
            filament += delta_e
            extrusion_dist += dist
        else:
            travel_dist += dist
        pos = nxt

    if skipped:
        logger.debug("gcode: %d unparseable line(s) skipped", skipped)
    return GcodeEstimate(
        time_s=time_s,
        filament_len_mm=filament,
        extrusion_distance_mm=extrusion_dist,
        travel_distance_mm=travel_dist,
    )


def load_gcode_override(path: str) -> GCodeOverride:
    """Файл .gcode -> GCodeOverride (время и филамент для merge_gcode_override)."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    est = parse_motion_program(text)
    logger.debug("gcode %s: time=%.1fs filament=%.1fmm", path, est.time_s, est.filament_len_mm)
    return GCodeOverride(
        source_file_name=os.path.basename(path),
        time_s=est.time_s,
        filament_len_mm=est.filament_len_mm,
    )
