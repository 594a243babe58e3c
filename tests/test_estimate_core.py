from __future__ import annotations

import json
import math

import pytest

import estimate_core as est
from estimate_core import (
    DEFAULT_PRINT_PARAMS,
    GCodeOverride,
    ParameterError,
    PrintParameters,
    UnsupportedMaterialError,
    estimate,
    merge_gcode_override,
    validate_print_params,
)


def test_default_breakdown_numbers():
    bd = estimate(10_000.0)
    assert bd.extruded_volume_mm3 == pytest.approx(6000.0)
    assert bd.mass_g == pytest.approx(7.44)
    assert bd.filament_len_mm == pytest.approx(6000.0 / (math.pi * 0.875 ** 2))
    assert bd.time_s == pytest.approx(690.0)
    assert bd.costs.filament == pytest.approx(0.186)
    assert bd.costs.energy == pytest.approx(0.12 * (690.0 / 3600.0) * 0.12)
    assert bd.costs.maintenance == pytest.approx(690.0 / 3600.0 * 2.0)
    subtotal = bd.costs.filament + bd.costs.energy + bd.costs.maintenance
    assert bd.costs.margin == pytest.approx(subtotal * 0.2)
    assert bd.params == DEFAULT_PRINT_PARAMS
    assert bd.time_source == "heuristic"


def test_estimate_is_idempotent():
    params = {"material": "petg", "infill": 0.35, "overhead": 0.1}
    assert estimate(1234.5, params) == estimate(1234.5, params)
    assert estimate(1234.5, params).to_dict() == estimate(1234.5, params).to_dict()


@pytest.mark.parametrize("volume", [0.0, 1.0, 999.9, 1e6])
@pytest.mark.parametrize("material", sorted(est.MATERIAL_DENSITIES))
def test_cost_conservation(volume, material):
    c = estimate(volume, {"material": material}).costs
    assert c.total == pytest.approx(c.filament + c.energy + c.maintenance + c.margin, rel=1e-6, abs=1e-12)


def test_flow_clamped_by_max_volumetric_flow():
    bd = estimate(1000.0, {"target_flow_mm3_s": 500.0, "max_volumetric_flow_mm3_s": 6.0, "overhead": 0.0})
    assert bd.time_s == pytest.approx(bd.extruded_volume_mm3 / 6.0)


def test_overhead_scales_base_time():
    base = estimate(5000.0, {"overhead": 0.0})
    doubled = estimate(5000.0, {"overhead": 1.0})
    assert doubled.time_s == pytest.approx(base.time_s * 2.0)


def test_negative_volume_clamps_to_zero():
    bd = estimate(-50.0)
    assert bd.extruded_volume_mm3 == 0.0
    assert bd.mass_g == 0.0
    assert bd.time_s == 0.0
    assert bd.costs.total == 0.0


def test_unsupported_material():
    with pytest.raises(UnsupportedMaterialError, match="unsupported material: UNKNOWN"):
        estimate(100.0, {"material": "UNKNOWN"})


def test_material_name_case_insensitive():
    assert estimate(100.0, {"material": "nylon"}).mass_g == pytest.approx(0.06 * 1.14)


def test_custom_density_table():
    bd = estimate(1000.0, {"material": "CF-PA"}, densities={"cf-pa": 1.3})
    assert bd.mass_g == pytest.approx(0.6 * 1.3)


@pytest.mark.parametrize(
    "params, match",
    [
        ({"infill": 1.5}, r"infill must be in \[0, 1\]"),
        ({"margin": -0.1}, r"margin must be in \[0, 1\]"),
        ({"filament_diameter_mm": 0}, "filament_diameter_mm must be > 0"),
        ({"target_flow_mm3_s": -1}, "target_flow_mm3_s must be > 0"),
        ({"price_per_kg": float("nan")}, "must be finite"),
        ({"power_w": True}, "must be a number"),
        ({"power_w": "lots"}, "must be a number"),
        ({"material": ""}, "non-empty string"),
        ({"nozzle": 0.4}, "unknown print parameter"),
    ],
)
def test_validation_rejects_bad_params(params, match):
    with pytest.raises(ParameterError, match=match):
        validate_print_params(params)
    with pytest.raises(ValueError):
        estimate(100.0, params)


def test_validation_fills_defaults_and_coerces():
    p = validate_print_params({"infill": "0.5", "material": " abs "})
    assert p.infill == 0.5
    assert p.material == "ABS"
    assert p.layer_height_mm == DEFAULT_PRINT_PARAMS.layer_height_mm
    assert validate_print_params(p) == p


@pytest.mark.parametrize(
    "params, match",
    [
        (PrintParameters(infill=5.0), r"infill must be in \[0, 1\]"),
        (PrintParameters(margin=-3.0), r"margin must be in \[0, 1\]"),
        (PrintParameters(layer_height_mm=0.0), "layer_height_mm must be > 0"),
    ],
)
def test_ready_params_object_is_validated(params, match):
    with pytest.raises(ParameterError, match=match):
        estimate(100.0, params)


def test_ready_params_object_material_upper_cased():
    bd = estimate(100.0, PrintParameters(material="pla"))
    assert bd.params.material == "PLA"
    assert bd.mass_g == pytest.approx(estimate(100.0, {"material": "PLA"}).mass_g)


def test_presets_and_flow_from_settings():
    assert est.target_flow_from_settings(0.2, 0.4, 50.0) == pytest.approx(4.0)
    fine = est.preset_params("Fine")
    assert fine["layer_height_mm"] == 0.12
    assert fine["target_flow_mm3_s"] == pytest.approx(0.12 * 0.4 * 40.0)
    with pytest.raises(ParameterError, match="unknown preset"):
        est.preset_params("ludicrous")


def test_gcode_override_replaces_time_and_filament_only():
    base = estimate(10_000.0)
    merged = merge_gcode_override(base, GCodeOverride("part.gcode", time_s=1234.0, filament_len_mm=5678.0))
    assert merged is not base
    assert merged.time_s == 1234.0
    assert merged.filament_len_mm == 5678.0
    assert merged.time_source == "gcode:part.gcode"
    assert merged.costs == base.costs
    assert merged.mass_g == base.mass_g
    # исходный breakdown не тронут
    assert base.time_s == pytest.approx(690.0)
    assert merge_gcode_override(base, None) == base


def test_config_loading(tmp_path):
    materials = tmp_path / "materials.json"
    materials.write_text(json.dumps({"pla": {"density_g_cm3": 1.25}, "PEEK": {"density_g_cm3": 1.3}}), encoding="utf-8")
    assert est.load_materials_json(str(materials)) == {"PLA": 1.25, "PEEK": 1.3}

    params = tmp_path / "params.json"
    params.write_text(json.dumps({"infill": 0.3, "margin": 0.1}), encoding="utf-8")
    out = est.load_params_json(str(params), override={"margin": 0.5})
    assert out == {"infill": 0.3, "margin": 0.5}

    bad = tmp_path / "bad_materials.json"
    bad.write_text(json.dumps({"PLA": {"price": 1}}), encoding="utf-8")
    with pytest.raises(ValueError, match="missing density_g_cm3"):
        est.load_materials_json(str(bad))
    with pytest.raises(FileNotFoundError):
        est.load_params_json(str(tmp_path / "nope.json"))


def test_render_report_mentions_key_figures():
    bd = estimate(10_000.0)
    text = est.render_report(obj_name="cube.stl", breakdown=bd, volume_layers_mm3=9_900.0, layer_count=50)
    assert "Деталь: cube.stl" in text
    assert "7.44 г" in text
    assert "50 слоёв" in text
    assert "0ч 12м" in text
    assert "ИТОГО: 0.69" in text
