# -*- coding: utf-8 -*-
"""
estimate_core.py — чистое ядро оценки FDM-печати: масса, филамент, время, стоимость.

Цели:
- Никакого UI / I/O в расчёте: estimate() — чистая функция, одинаковый ввод -> одинаковый вывод.
- Параметры сначала валидируются (validate_print_params) в типизированный PrintParameters,
  и только потом идут в формулы. Неверный ввод отклоняется, а не «подрезается».
- Конфиги materials.json / params.json и текстовый отчёт — здесь же, чтобы CLI был тонким.

Формулы:
  extruded  = max(0, V_model × (infill + wall_factor + top_bottom_factor))
  mass_g    = extruded / 1000 × density
  filament  = extruded / (π × (d/2)²)
  time_s    = extruded / min(target_flow, mvf) × (1 + overhead)
  costs     = filament + energy + maintenance + margin
"""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class ParameterError(ValueError):
    """Параметр печати вне допустимого диапазона / неизвестный ключ."""


class UnsupportedMaterialError(ValueError):
    """Материала нет в таблице плотностей."""


# ---------- Утилиты ----------
def nz(v, d=0.0) -> float:
    try:
        f = float(v)
        if math.isfinite(f):
            return f
    except (TypeError, ValueError):
        pass
    return d


def _hm(seconds: float) -> str:
    total_min = int(round(max(0.0, nz(seconds)) / 60.0))
    h, m = divmod(total_min, 60)
    return f"{h}ч {m:02d}м"


def _money(v: float) -> str:
    return f"{nz(v):,.2f}".replace(",", " ")


def _line(label: str, value: float, width: int = 12) -> str:
    return f"  {label:<28}{_money(value):>{width}}\n"


def deep_merge(dst: dict, src: dict) -> dict:
    """Глубокое слияние словарей src в dst (in-place). Возвращает dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


# ---------- Материалы и параметры ----------
MATERIAL_DENSITIES: Dict[str, float] = {
    "PLA": 1.24,
    "PETG": 1.27,
    "ABS": 1.04,
    "TPU": 1.21,
    "NYLON": 1.14,
}


@dataclass(frozen=True)
class PrintParameters:
    material: str = "PLA"
    infill: float = 0.2
    wall_factor: float = 0.25
    top_bottom_factor: float = 0.15
    target_flow_mm3_s: float = 10.0
    max_volumetric_flow_mm3_s: float = 12.0
    overhead: float = 0.15
    price_per_kg: float = 25.0
    power_w: float = 120.0
    energy_price_kwh: float = 0.12
    maintenance_per_hour: float = 2.0
    margin: float = 0.2
    filament_diameter_mm: float = 1.75
    layer_height_mm: float = 0.2

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_PRINT_PARAMS = PrintParameters()

# Доли в [0, 1]
RATIO_FIELDS = ("infill", "wall_factor", "top_bottom_factor", "overhead", "margin")
# Строго > 0
POSITIVE_FIELDS = (
    "target_flow_mm3_s",
    "max_volumetric_flow_mm3_s",
    "price_per_kg",
    "power_w",
    "energy_price_kwh",
    "maintenance_per_hour",
    "filament_diameter_mm",
    "layer_height_mm",
)
PARAM_FIELDS = tuple(f.name for f in fields(PrintParameters))

# Пресеты: высота слоя + скорость; поток = слой × ширина сопла × скорость
DEFAULT_NOZZLE_WIDTH_MM = 0.4
PRESETS: Dict[str, Dict[str, float]] = {
    "fine": {"layer_height_mm": 0.12, "print_speed_mm_s": 40.0},
    "standard": {"layer_height_mm": 0.20, "print_speed_mm_s": 55.0},
    "fast": {"layer_height_mm": 0.28, "print_speed_mm_s": 70.0},
}


def target_flow_from_settings(layer_height_mm: float, nozzle_width_mm: float, print_speed_mm_s: float) -> float:
    """Объёмный поток (мм³/с) из высоты слоя, ширины линии и скорости."""
    return float(layer_height_mm) * float(nozzle_width_mm) * float(print_speed_mm_s)


def preset_params(name: str, nozzle_width_mm: float = DEFAULT_NOZZLE_WIDTH_MM) -> dict:
    key = (name or "").strip().lower()
    if key not in PRESETS:
        raise ParameterError(f"unknown preset: {name!r} (expected one of {', '.join(PRESETS)})")
    p = PRESETS[key]
    return {
        "layer_height_mm": p["layer_height_mm"],
        "target_flow_mm3_s": target_flow_from_settings(p["layer_height_mm"], nozzle_width_mm, p["print_speed_mm_s"]),
    }


def _coerce_number(key: str, value) -> float:
    if isinstance(value, bool) or value is None:
        raise ParameterError(f"{key} must be a number, got {value!r}")
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise ParameterError(f"{key} must be a number, got {value!r}") from None
    if not math.isfinite(f):
        raise ParameterError(f"{key} must be finite, got {value!r}")
    return f


def validate_print_params(
    params: Optional[Mapping] = None,
    *,
    base: PrintParameters = DEFAULT_PRINT_PARAMS,
) -> PrintParameters:
    """
    Частичный набор параметров -> проверенный PrintParameters.
    Пропущенные поля берутся из base. Материал приводится к верхнему регистру,
    но его наличие в таблице плотностей проверяет estimate().
    """
    if params is None:
        params = {}
    if isinstance(params, PrintParameters):
        params = params.to_dict()
    unknown = sorted(set(params) - set(PARAM_FIELDS))
    if unknown:
        raise ParameterError(f"unknown print parameter(s): {', '.join(unknown)}")

    values = base.to_dict()
    for key, raw in params.items():
        if key == "material":
            if not isinstance(raw, str) or not raw.strip():
                raise ParameterError(f"material must be a non-empty string, got {raw!r}")
            values[key] = raw.strip().upper()
            continue
        values[key] = _coerce_number(key, raw)

    for key in RATIO_FIELDS:
        if not 0.0 <= values[key] <= 1.0:
            raise ParameterError(f"{key} must be in [0, 1], got {values[key]!r}")
    for key in POSITIVE_FIELDS:
        if values[key] <= 0:
            raise ParameterError(f"{key} must be > 0, got {values[key]!r}")
    values["material"] = str(values["material"]).strip().upper()
    return PrintParameters(**values)


# ---------- Результат ----------
@dataclass(frozen=True)
class CostBreakdown:
    filament: float
    energy: float
    maintenance: float
    margin: float
    total: float


@dataclass(frozen=True)
class EstimateBreakdown:
    volume_model_mm3: float
    extruded_volume_mm3: float
    mass_g: float
    filament_len_mm: float
    time_s: float
    costs: CostBreakdown
    params: PrintParameters
    time_source: str = "heuristic"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GCodeOverride:
    source_file_name: str
    time_s: float
    filament_len_mm: float


def estimate(
    volume_model_mm3: float,
    params: Optional[Mapping] = None,
    *,
    densities: Optional[Mapping[str, float]] = None,
) -> EstimateBreakdown:
    """
    Объём модели (мм³) + параметры -> EstimateBreakdown.
    UnsupportedMaterialError, если материала нет в таблице; ParameterError — кривые параметры.
    Готовый PrintParameters тоже проходит проверку: dataclass можно собрать с любыми значениями.
    """
    p = validate_print_params(params)
    table = MATERIAL_DENSITIES if densities is None else {k.upper(): float(v) for k, v in densities.items()}
    density = table.get(p.material)
    if not density:
        raise UnsupportedMaterialError(f"unsupported material: {p.material}")

    v_model = float(volume_model_mm3)
    if not math.isfinite(v_model):
        raise ParameterError(f"volume_model_mm3 must be finite, got {volume_model_mm3!r}")

    factors = p.infill + p.wall_factor + p.top_bottom_factor
    extruded = max(0.0, v_model * factors)
    mass_g = (extruded / 1000.0) * density

    r = p.filament_diameter_mm / 2.0
    filament_area = math.pi * r * r
    filament_len = extruded / filament_area if filament_area > 0 else 0.0

    effective_flow = min(p.target_flow_mm3_s, p.max_volumetric_flow_mm3_s)
    if p.target_flow_mm3_s > p.max_volumetric_flow_mm3_s:
        logger.debug("target flow %.2f mm3/s clamped to max volumetric flow %.2f mm3/s",
                     p.target_flow_mm3_s, p.max_volumetric_flow_mm3_s)
    base_time_s = extruded / effective_flow if effective_flow > 0 else 0.0
    time_s = base_time_s * (1.0 + p.overhead)

    time_h = time_s / 3600.0
    filament_cost = (mass_g / 1000.0) * p.price_per_kg
    energy_cost = (p.power_w / 1000.0) * time_h * p.energy_price_kwh
    maintenance_cost = time_h * p.maintenance_per_hour
    subtotal = filament_cost + energy_cost + maintenance_cost
    margin_cost = subtotal * p.margin

    return EstimateBreakdown(
        volume_model_mm3=v_model,
        extruded_volume_mm3=extruded,
        mass_g=mass_g,
        filament_len_mm=filament_len,
        time_s=time_s,
        costs=CostBreakdown(
            filament=filament_cost,
            energy=energy_cost,
            maintenance=maintenance_cost,
            margin=margin_cost,
            total=filament_cost + energy_cost + maintenance_cost + margin_cost,
        ),
        params=p,
    )


def merge_gcode_override(base: EstimateBreakdown, override: Optional[GCodeOverride]) -> EstimateBreakdown:
    """
    Новый breakdown с временем/филаментом из G-code. Стоимость не пересчитывается:
    она остаётся функцией эвристической массы.
    """
    if override is None:
        return replace(base)
    return replace(
        base,
        time_s=float(override.time_s),
        filament_len_mm=float(override.filament_len_mm),
        time_source=f"gcode:{override.source_file_name}",
    )


# ---------- Config loading (единая правда для UI/CLI) ----------
def get_default_config_dir() -> str:
    """Папка по умолчанию для materials.json / params.json: рядом с модулем."""
    return os.path.dirname(os.path.abspath(__file__))


def get_default_materials_path(config_dir: str | None = None) -> str:
    return os.path.join(config_dir or get_default_config_dir(), "materials.json")


def get_default_params_path(config_dir: str | None = None) -> str:
    return os.path.join(config_dir or get_default_config_dir(), "params.json")


def load_materials_json(path: str) -> Dict[str, float]:
    """
    materials.json -> density_by_material (ключи в верхнем регистре).
    Формат: { "PLA": {"density_g_cm3": 1.24}, ... }
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict) or not data:
        raise ValueError("materials.json: expected object {material: {...}}")

    density = {}
    for name, row in data.items():
        if not isinstance(row, dict) or "density_g_cm3" not in row:
            raise ValueError(f"materials.json: '{name}' missing density_g_cm3")
        value = nz(row["density_g_cm3"], 0.0)
        if value <= 0:
            raise ValueError(f"materials.json: '{name}' density_g_cm3 must be > 0")
        density[str(name).strip().upper()] = value
    return density


def load_params_json(path: str, *, base: dict | None = None, override: dict | None = None) -> dict:
    """
    params.json -> dict параметров (ещё не проверенный).
    base: во что мерджить файл; override: мердж поверх результата (--set в CLI).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    with open(path, "r", encoding="utf-8") as f:
        cfg = json.load(f)
    if not isinstance(cfg, dict):
        raise ValueError("params.json: expected object")

    out = json.loads(json.dumps(base)) if isinstance(base, dict) else {}
    deep_merge(out, cfg)
    if override:
        deep_merge(out, override)
    return out


# ---------- Форматирование отчёта ----------
def render_report(
    *,
    obj_name: str,
    breakdown: EstimateBreakdown,
    volume_layers_mm3: float | None = None,
    layer_count: int | None = None,
    calc_time_s: float = 0.0,
    diag_text: str = "",
) -> str:
    b = breakdown
    out = []
    if diag_text:
        out.append(diag_text.rstrip() + "\n")
    out.append(f"Деталь: {obj_name}\n")
    out.append(f"• Объём: модель {b.volume_model_mm3 / 1000.0:.2f} см³ → экструзия {b.extruded_volume_mm3 / 1000.0:.2f} см³\n")
    if volume_layers_mm3 is not None:
        out.append(f"• По слоям: {volume_layers_mm3 / 1000.0:.2f} см³ ({layer_count or 0} слоёв)\n")
    out.append(f"• Вес: {b.mass_g:.2f} г | Филамент: {b.filament_len_mm / 1000.0:.2f} м\n")
    out.append(f"• Время печати: {_hm(b.time_s)} ({b.time_source})\n")
    out.append(f"• Материал: {b.params.material} ({b.params.price_per_kg:.2f} за кг)\n")
    out.append("-" * 42 + "\n")
    out.append(_line("Филамент", b.costs.filament))
    out.append(_line("Электроэнергия", b.costs.energy))
    out.append(_line("Обслуживание", b.costs.maintenance))
    out.append(_line(f"Наценка {b.params.margin * 100:.0f}%", b.costs.margin))
    out.append("-" * 42 + "\n")
    out.append(f"ИТОГО: {_money(b.costs.total)}\n")
    out.append(f"Время расчёта: {calc_time_s:.4f} с\n")
    return "".join(out)
