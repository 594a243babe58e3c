# -*- coding: utf-8 -*-
"""
CLI оценки FDM-печати по сетке модели — без UI, .stl/.3mf (+ опционально готовый G-code).

Примеры:
  python cli_estimator.py model.stl --material PETG --infill 0.2 --json
  python cli_estimator.py a.stl b.3mf --preset fine --per-object --layers --text
  python cli_estimator.py part.3mf --gcode part.gcode --json

Ключевые гарантии:
• Каждый файл разбирается с чистого листа: у ядра нет глобального состояния.
• Все параметры проходят validate_print_params ДО расчёта; ошибка -> код 2.
• Поддержка materials.json и params.json (+ точечные override'ы флагом --set).
• Параллель по файлам (--workers N или внешний executor) с детерминированной агрегацией.

Стабильный JSON-контракт (--json):
  {
    "success": <bool>,
    "count": <int>,                  # число успешно посчитанных файлов
    "per_object": [ {...}, ... ] | null,
    "summary": {...} | null,         # сводка по всем файлам как единой сборке
    "errors": [ {"file": ..., "error": ...}, ... ],
    "count_ok": <int>,
    "count_failed": <int>,
    "time_s": <float>
  }

Коды возврата: 0 — успех; 1 — ошибка расчёта хотя бы одного файла; 2 — ошибка конфигурации/аргументов.

Конфиги (materials.json / params.json):
  • По умолчанию берутся из cwd (если есть оба файла), иначе рядом со скриптом;
    если и там нет — встроенные таблицы.
  • --config-dir задаёт папку явно; отсутствующий файл в ней — ошибка.
  • Порядок слияния: params.json -> --preset -> флаги (--material/--infill/--layer-height) -> --set.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from concurrent.futures import Executor, ProcessPoolExecutor, as_completed
from typing import Dict, List, Optional, Tuple

import estimate_core as est
from formats_core import ParseReport, load_mesh
from gcode_core import load_gcode_override
from geometry_core import analyze_mesh
from slice_core import UP, build_layer_stack

logger = logging.getLogger("cli")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


# ---------- Утилиты ----------
def set_by_dotted_path(d: dict, path: str, value):
    """Устанавливает значение по точечному пути. Создаёт вложенные словари при необходимости."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def parse_kv_override(pairs):
    """Парсит список key=val из --set. Пытается привести val к bool/int/float, иначе оставляет строкой."""
    out = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ValueError(f"bad override '{kv}', expected key=val")
        k, v = kv.split('=', 1)
        k = k.strip()
        if not k:
            raise ValueError(f"bad override '{kv}', empty key")
        vv = v
        try:
            if v.lower() in ('true', 'false'):
                vv = (v.lower() == 'true')
            elif '.' in v or 'e' in v.lower():
                vv = float(v)
            else:
                vv = int(v)
        except ValueError:
            pass
        set_by_dotted_path(out, k, vv)
    return out


def parse_orientation(text: str) -> Tuple[float, float, float]:
    parts = [p for p in (text or "").replace(";", ",").split(",") if p.strip()]
    if len(parts) != 3:
        raise ValueError(f"orientation must be 'x,y,z', got {text!r}")
    return tuple(float(p) for p in parts)


# ---------- Загрузка конфигов ----------
class ConfigError(Exception):
    """Ошибка конфигурации CLI (нет файла, неверный JSON, валидация и т.д.)."""


def resolve_config_paths(config_dir: str | None = None) -> tuple[str, str]:
    """Определяет пути к materials.json и params.json по config_dir/cwd/директории скрипта."""
    if config_dir:
        base_dir = os.path.abspath(os.path.expanduser(config_dir))
    else:
        cwd = os.getcwd()
        if os.path.exists(os.path.join(cwd, "materials.json")) and os.path.exists(os.path.join(cwd, "params.json")):
            base_dir = cwd
        else:
            base_dir = BASE_DIR
    return (
        est.get_default_materials_path(base_dir),
        est.get_default_params_path(base_dir),
    )


def _json_error(name: str, e: json.JSONDecodeError) -> ConfigError:
    return ConfigError(f"{name}: invalid JSON ({e.msg}, line {e.lineno}, column {e.colno})")


def load_configs(
    config_dir: str | None,
    *,
    cli_params: dict | None = None,
    override: dict | None = None,
    preset: str | None = None,
) -> tuple[Dict[str, float], est.PrintParameters, str, str]:
    """
    Загружает materials/params и собирает проверенный PrintParameters.
    Отсутствующие файлы по умолчанию -> встроенные таблицы; при явном config_dir -> ConfigError.
    """
    materials_path, params_path = resolve_config_paths(config_dir)
    strict = bool(config_dir)

    try:
        density = est.load_materials_json(materials_path)
    except FileNotFoundError as e:
        if strict:
            raise ConfigError(f"config file not found: {e}") from None
        density = dict(est.MATERIAL_DENSITIES)
        materials_path = "(built-in)"
    except json.JSONDecodeError as e:
        raise _json_error("materials.json", e) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None

    try:
        raw = est.load_params_json(params_path)
    except FileNotFoundError as e:
        if strict:
            raise ConfigError(f"config file not found: {e}") from None
        raw = {}
        params_path = "(built-in)"
    except json.JSONDecodeError as e:
        raise _json_error("params.json", e) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None

    try:
        if preset:
            est.deep_merge(raw, est.preset_params(preset))
        est.deep_merge(raw, dict(cli_params or {}))
        est.deep_merge(raw, dict(override or {}))
        params = est.validate_print_params(raw)
    except est.ParameterError as e:
        raise ConfigError(str(e)) from None

    if params.material not in density:
        raise ConfigError(f"unsupported material: {params.material} (known: {', '.join(sorted(density))})")
    return density, params, materials_path, params_path


def finalize_json_payload(payload: dict, errors: List[dict], count_ok: int) -> dict:
    """Добавляет поля ошибок и итоговые счетчики для JSON-вывода."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["count_ok"] = int(count_ok)
    payload["success"] = len(errors) == 0
    return payload


def _breakdown_json(bd: est.EstimateBreakdown) -> dict:
    return {
        "material": bd.params.material,
        "volume_model_mm3": bd.volume_model_mm3,
        "extruded_volume_mm3": bd.extruded_volume_mm3,
        "mass_g": bd.mass_g,
        "filament_len_mm": bd.filament_len_mm,
        "time_s": bd.time_s,
        "time_source": bd.time_source,
        "costs": {
            "filament": bd.costs.filament,
            "energy": bd.costs.energy,
            "maintenance": bd.costs.maintenance,
            "margin": bd.costs.margin,
            "total": bd.costs.total,
        },
    }


# ---------- Один файл ----------
def _compute_one_file(
    path: str,
    *,
    params: est.PrintParameters,
    densities: Dict[str, float],
    orientation: Tuple[float, float, float] = UP,
    with_layers: bool = False,
    gcode=None,
    diag: bool = False,
) -> dict:
    """Процесс-воркер: читает, анализирует и оценивает один файл."""
    t0 = time.perf_counter()
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    report = ParseReport()
    mesh = load_mesh(path, report)
    metrics = analyze_mesh(mesh)
    bd = est.merge_gcode_override(
        est.estimate(metrics.volume.absolute_mm3, params, densities=densities),
        gcode,
    )

    out = {"file": os.path.basename(path)}
    out.update(_breakdown_json(bd))
    out.update({
        "triangle_count": metrics.triangle_count,
        "vertex_count": metrics.vertex_count,
        "size_mm": list(metrics.size),
        "watertight": metrics.watertight,
        "winding_consistent": metrics.winding_consistent,
    })
    if with_layers:
        stack = build_layer_stack(mesh, orientation, params.layer_height_mm)
        out["layers"] = {
            "layer_count": len(stack.layers),
            "layer_height_mm": stack.layer_height,
            "volume_mm3": stack.volume_mm3,
            "max_area_mm2": stack.max_area,
        }
    out["calc_seconds"] = float(time.perf_counter() - t0)
    out["diag_text"] = report.text() if (diag and report.kind == "3mf") else ""
    return out


# ---------- Набор файлов ----------
def compute_for_files(
    files: List[str],
    *,
    params: est.PrintParameters,
    densities: Dict[str, float],
    orientation: Tuple[float, float, float] = UP,
    with_layers: bool = False,
    gcode=None,
    diag: bool = False,
    per_object: bool = False,
    as_json: bool = False,
    workers: int = 1,
    executor: Optional[Executor] = None,
    errors: List[dict] | None = None,
) -> dict:
    """
    Считает набор файлов; executor передаётся снаружи или создаётся пул процессов при workers>1.
    Возвращает либо JSON payload (as_json=True), либо {"text": "..."}.
    """
    t0 = time.time()
    results: List[dict] = []
    errors = errors if errors is not None else []
    file_list = list(files)
    kwargs = dict(
        params=params,
        densities=densities,
        orientation=orientation,
        with_layers=with_layers,
        gcode=gcode,
        diag=diag,
    )

    def _run(ex: Executor) -> None:
        futs = {ex.submit(_compute_one_file, p, **kwargs): p for p in file_list}
        for fut in as_completed(futs):
            path = futs[fut]
            try:
                results.append(fut.result())
            except Exception as exc:
                logger.debug("file %s failed", path, exc_info=True)
                errors.append({"file": os.path.basename(path), "error": str(exc)})

    if executor is not None:
        _run(executor)
    elif workers and workers > 1 and len(file_list) > 1:
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            _run(ex)
    else:
        for p in file_list:
            try:
                results.append(_compute_one_file(p, **kwargs))
            except Exception as exc:
                logger.debug("file %s failed", p, exc_info=True)
                errors.append({"file": os.path.basename(p), "error": str(exc)})

    # стабильный порядок для вывода/тестов
    results.sort(key=lambda r: r["file"])
    errors.sort(key=lambda e: e["file"])

    total_volume = sum(float(r["volume_model_mm3"]) for r in results)
    summary_bd = est.merge_gcode_override(est.estimate(total_volume, params, densities=densities), gcode)
    calc_time_s = time.time() - t0

    # ---------- JSON ----------
    if as_json:
        payload = {
            "success": True,
            "count": len(results),
            "per_object": results if per_object else None,
            "summary": None,
            "time_s": calc_time_s,
        }
        if not per_object:
            summary = _breakdown_json(summary_bd)
            summary["files"] = [r["file"] for r in results]
            summary["params"] = params.to_dict()
            payload["summary"] = summary
        return finalize_json_payload(payload, errors, len(results))

    # ---------- TEXT ----------
    if per_object:
        lines: List[str] = []
        for r in results:
            bd = est.merge_gcode_override(est.estimate(r["volume_model_mm3"], params, densities=densities), gcode)
            layers = r.get("layers") or {}
            lines.append(est.render_report(
                obj_name=r["file"],
                breakdown=bd,
                volume_layers_mm3=layers.get("volume_mm3") if layers else None,
                layer_count=layers.get("layer_count") if layers else None,
                calc_time_s=r["calc_seconds"],
                diag_text=r.get("diag_text", ""),
            ))
            lines.append("\n")
        return {"text": "".join(lines).rstrip()}

    diag_join = "\n".join(str(r["diag_text"]).rstrip() for r in results if r.get("diag_text"))
    layer_vol = None
    layer_count = None
    if with_layers and results:
        layer_vol = sum(float(r["layers"]["volume_mm3"]) for r in results)
        layer_count = max(int(r["layers"]["layer_count"]) for r in results)
    report = est.render_report(
        obj_name=f"Сборка ({len(results)} объектов)",
        breakdown=summary_bd,
        volume_layers_mm3=layer_vol,
        layer_count=layer_count,
        calc_time_s=calc_time_s,
        diag_text=diag_join,
    )
    return {"text": report}


# ---------- CLI ----------
def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="FDM print estimate from .stl/.3mf meshes (optional G-code override)")
    ap.add_argument('files', nargs='+', help='Пути к моделям .stl / .3mf')
    ap.add_argument('--set', dest='overrides', action='append', help='Переопределить параметр печати (key=val, напр. overhead=0.2). Можно несколько раз.')
    ap.add_argument('--config-dir', default=None, help='Папка с materials.json и params.json (по умолчанию: cwd или рядом со скриптом)')

    ap.add_argument('--material', default=None, help='Материал (PLA, PETG, ABS, TPU, NYLON или из materials.json)')
    ap.add_argument('--infill', type=float, default=None, help='Доля заполнения 0..1')
    ap.add_argument('--preset', choices=sorted(est.PRESETS), default=None, help='Пресет высоты слоя/скорости')
    ap.add_argument('--layer-height', type=float, default=None, help='Высота слоя, мм')
    ap.add_argument('--orientation', default='0,0,1', help='Направление роста слоёв x,y,z (для --layers)')
    ap.add_argument('--layers', action='store_true', help='Нарезать модель на слои и добавить сводку слоёв')
    ap.add_argument('--gcode', default=None, help='Готовый G-code: время и филамент берутся из него (только для одного файла)')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='Вывод в JSON')
    fmt.add_argument('--text', action='store_true', help='Текстовый отчёт (по умолчанию)')

    ap.add_argument('--diag', action='store_true', help='Добавить блок диагностики 3MF')
    ap.add_argument('--per-object', action='store_true', help='Считать и выводить каждый файл отдельно (по умолчанию — сводный)')
    ap.add_argument('--workers', type=int, default=1, help='Процессы для параллельной обработки файлов (>1 — включить мультипроцессинг)')
    ap.add_argument('-v', '--verbose', action='store_true', help='Подробный лог в stderr')
    return ap


def main(argv: List[str] | None = None):
    """Точка входа CLI: аргументы -> конфиги -> compute_for_files -> stdout."""
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    cli_params = {}
    if args.material is not None:
        cli_params["material"] = args.material
    if args.infill is not None:
        cli_params["infill"] = args.infill
    if args.layer_height is not None:
        cli_params["layer_height_mm"] = args.layer_height

    try:
        overrides = parse_kv_override(args.overrides)
        orientation = parse_orientation(args.orientation)
        if args.gcode and len(args.files) > 1:
            raise ConfigError("--gcode applies to a single model file only")
        densities, params, materials_path, params_path = load_configs(
            args.config_dir, cli_params=cli_params, override=overrides, preset=args.preset,
        )
        gcode = load_gcode_override(args.gcode) if args.gcode else None
    except (ConfigError, ValueError, OSError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    logger.info("using materials: %s", materials_path)
    logger.info("using params   : %s", params_path)

    errors: List[dict] = []
    try:
        payload = compute_for_files(
            args.files,
            params=params,
            densities=densities,
            orientation=orientation,
            with_layers=bool(args.layers),
            gcode=gcode,
            diag=bool(args.diag),
            per_object=bool(args.per_object),
            as_json=bool(args.json),
            workers=int(max(1, args.workers)),
            errors=errors,
        )
    except Exception as e:
        print(f"Calculation error: {e}", file=sys.stderr)
        sys.exit(1)

    if errors and not args.json:
        for err in errors:
            print(f"[cli] file {err.get('file')}: {err.get('error')}", file=sys.stderr)

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        print(payload["text"])

    if errors:
        sys.exit(1)


if __name__ == '__main__':
    main()
