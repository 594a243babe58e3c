# -*- coding: utf-8 -*-
"""
formats_core.py — разбор исходных форматов в единый Mesh.

Поддержка:
- STL (бинарный и ASCII) — «триангулированная поверхность», единицы считаются мм.
- 3MF — «упакованная модель»: zip + XML, атрибут unit на каждом .model,
  transform у build/item и component, внешние компоненты production p:path.

Формат определяется ОДИН раз (MeshSource.kind), дальше ядро работает только с Mesh.
Никакого кеша и глобального состояния парсера: всё, что нужно для диагностики,
возвращается в ParseReport.
"""
from __future__ import annotations

import io
import logging
import os
import posixpath
import struct
import zipfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

import numpy as np

from geometry_core import Mesh, MeshError

logger = logging.getLogger(__name__)


class MeshFormatError(MeshError):
    """Битый/неподдерживаемый файл модели."""


class MeshSourceKind(Enum):
    TRIANGULATED = "stl"
    PACKAGED = "3mf"


@dataclass(frozen=True)
class MeshSource:
    kind: MeshSourceKind
    data: bytes
    file_name: str = ""


@dataclass
class MeshPart:
    name: str
    vertices_mm: np.ndarray
    triangles: np.ndarray


@dataclass
class ParseReport:
    """Диагностика разбора одного файла (блок --diag в CLI)."""
    file_name: str = ""
    kind: str = ""
    units: set = field(default_factory=set)
    item_count: int = 0
    component_count: int = 0
    external_p_path: int = 0
    det_values: List[float] = field(default_factory=list)

    def text(self) -> str:
        dets = self.det_values
        det_min = f"{min(dets):.3f}" if dets else "—"
        det_max = f"{max(dets):.3f}" if dets else "—"
        units = ", ".join(sorted(self.units)) or "millimeter"
        return (f"Файл: {self.file_name}\n"
                f"Единицы (из моделей): {units}\n"
                f"Items: {self.item_count} | Components: {self.component_count} | p:path внешних: {self.external_p_path}\n"
                f"det по items: min={det_min}, max={det_max}\n"
                "----------------------------------------\n")


SUPPORTED_EXTENSIONS = {'.stl': MeshSourceKind.TRIANGULATED, '.3mf': MeshSourceKind.PACKAGED}


def mesh_source_from_bytes(data: bytes, file_name: str) -> MeshSource:
    ext = os.path.splitext(file_name)[1].lower()
    kind = SUPPORTED_EXTENSIONS.get(ext)
    if kind is None:
        raise MeshFormatError('Only .3mf and .stl supported')
    return MeshSource(kind=kind, data=bytes(data), file_name=os.path.basename(file_name))


def mesh_source_from_path(path: str) -> MeshSource:
    ext = os.path.splitext(path)[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise MeshFormatError('Only .3mf and .stl supported')
    with open(path, 'rb') as f:
        data = f.read()
    return mesh_source_from_bytes(data, path)


# ---------- STL ----------
MAX_STL_TRIANGLES = 40_000_000
_ASCII_STL_FALLBACK = "No triangles found in ASCII STL"


def _looks_like_ascii_stl(prefix: bytes) -> bool:
    stripped = prefix.lstrip()
    if not stripped.lower().startswith(b"solid"):
        return False
    text = prefix.decode("utf-8", errors="ignore").lower()
    return ("facet" in text) and ("vertex" in text)


def _binary_stl_count(data: bytes) -> int | None:
    """Число треугольников, если data — валидный бинарный STL; None — похоже на ASCII."""
    ascii_like = _looks_like_ascii_stl(data[:8192])
    if len(data) < 84:
        if ascii_like:
            return None
        raise MeshFormatError("Malformed binary STL: file too small")

    count = struct.unpack("<I", data[80:84])[0]
    if count > MAX_STL_TRIANGLES:
        if ascii_like:
            return None
        raise MeshFormatError(f"STL limit exceeded: triangles={count} > {MAX_STL_TRIANGLES}")

    expected_size = 84 + 50 * count
    if expected_size == len(data):
        return count
    if ascii_like:
        return None
    raise MeshFormatError(f"Malformed binary STL: expected {expected_size} bytes, got {len(data)}")


def _index_triangle_soup(soup: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """(K, 3, 3) -> (V, T) с объединением совпадающих вершин."""
    flat = soup.reshape(-1, 3)
    if flat.shape[0] == 0:
        return np.zeros((0, 3), dtype=np.float64), np.zeros((0, 3), dtype=np.int64)
    V, inverse = np.unique(flat, axis=0, return_inverse=True)
    T = inverse.reshape(-1, 3).astype(np.int64)
    return V.astype(np.float64), T


def parse_binary_stl(data: bytes, count: int) -> Tuple[np.ndarray, np.ndarray]:
    record = np.dtype([
        ("normal", "<f4", (3,)),
        ("verts", "<f4", (3, 3)),
        ("attr", "<u2"),
    ])
    rows = np.frombuffer(data, dtype=record, count=count, offset=84)
    soup = rows["verts"].astype(np.float64)
    if not np.all(np.isfinite(soup)):
        bad = int(np.argmax(~np.isfinite(soup).all(axis=(1, 2))))
        raise MeshFormatError(f"Malformed binary STL: non-finite vertex coordinate in triangle {bad}")
    return _index_triangle_soup(soup)


def parse_ascii_stl(text: str) -> Tuple[np.ndarray, np.ndarray]:
    triangles: List[List[Tuple[float, float, float]]] = []
    current: List[Tuple[float, float, float]] = []
    for lineno, line in enumerate(text.splitlines(), 1):
        stripped = line.strip()
        low = stripped.lower()
        if low.startswith("vertex"):
            parts = stripped.split()
            if len(parts) != 4:
                raise MeshFormatError(f"Malformed ASCII STL: bad vertex at line {lineno}")
            try:
                xyz = (float(parts[1]), float(parts[2]), float(parts[3]))
            except ValueError:
                raise MeshFormatError(f"Malformed ASCII STL: bad vertex at line {lineno}") from None
            current.append(xyz)
            if len(current) == 3:
                triangles.append(current)
                current = []
        elif low.startswith("endfacet"):
            current = []
    if not triangles:
        raise MeshFormatError(_ASCII_STL_FALLBACK)
    soup = np.array(triangles, dtype=np.float64)
    if not np.all(np.isfinite(soup)):
        raise MeshFormatError("Malformed ASCII STL: non-finite vertex coordinate")
    return _index_triangle_soup(soup)


def parse_stl_bytes(data: bytes, name: str = "STL model") -> List[MeshPart]:
    count = _binary_stl_count(data)
    if count is None:
        V, T = parse_ascii_stl(data.decode("utf-8", errors="ignore"))
    else:
        V, T = parse_binary_stl(data, count)
    return [MeshPart(name=name, vertices_mm=V, triangles=T)]


# ---------- 3MF ----------
NS_CORE = 'http://schemas.microsoft.com/3dmanufacturing/core/2015/02'
NS_PROD = 'http://schemas.microsoft.com/3dmanufacturing/production/2015/06'
MAX_3MF_ENTRY_BYTES = 25 * 1024 * 1024
MAX_3MF_TOTAL_XML_BYTES = 50 * 1024 * 1024
MAX_3MF_OBJECTS = 20000
MAX_3MF_COMPONENTS = 200000
MAX_3MF_VERTICES = 20_000_000
MAX_3MF_TRIANGLES = 40_000_000
MAX_COMPONENT_DEPTH = 32

UNIT_SCALE_MM = {
    'micron': 0.001, 'millimeter': 1.0, 'centimeter': 10.0, 'meter': 1000.0, 'inch': 25.4, 'foot': 304.8
}


def unit_to_mm(unit_str: str | None) -> float:
    unit = (unit_str or 'millimeter').strip().lower()
    return UNIT_SCALE_MM.get(unit, 1.0)


def _parse_transform(s: str | None) -> np.ndarray:
    """
    transform = 12 чисел: m00 m01 m02 m10 m11 m12 m20 m21 m22 m30 m31 m32 (3MF core).
    Вершины — row-vectors: v' = [x y z 1] @ M, где M — 4×3; храним как 4×4 column-форму,
    композиция: M_world = M_parent @ M_local.
    """
    if not s:
        return np.eye(4, dtype=np.float64)
    try:
        vals = [float(x) for x in s.replace(",", " ").split()]
    except ValueError:
        raise MeshFormatError(f"Malformed 3MF: invalid transform {s!r}") from None
    if len(vals) != 12 or not np.all(np.isfinite(vals)):
        raise MeshFormatError(f"Malformed 3MF: invalid transform {s!r}")
    m00, m01, m02, m10, m11, m12, m20, m21, m22, m30, m31, m32 = vals
    # Строка i матрицы 3MF: образ базисного вектора i; переводим в column-форму.
    return np.array(
        [
            [m00, m10, m20, m30],
            [m01, m11, m21, m31],
            [m02, m12, m22, m32],
            [0.0, 0.0, 0.0, 1.0],
        ],
        dtype=np.float64,
    )


def _apply_transform(V_mm: np.ndarray, M: np.ndarray) -> np.ndarray:
    if V_mm.size == 0:
        return V_mm
    R = M[:3, :3]; t = M[:3, 3]
    return V_mm @ R.T + t


def _limit_err(kind: str, current: int, limit: int, context: str = "") -> MeshFormatError:
    msg = f"3MF limit exceeded: {kind}={current} > {limit}"
    if context:
        msg += f" ({context})"
    return MeshFormatError(msg)


def _norm_model_path(path: str) -> str:
    if not path:
        return ""
    path = path.replace("\\", "/").lstrip("/")
    path = posixpath.normpath(path)
    if path.startswith(".."):
        raise MeshFormatError("3MF contains invalid model path outside archive")
    return path


def _ns(root: ET.Element) -> Dict[str, str]:
    if root.tag.startswith('{') and '}' in root.tag:
        return {'ns': root.tag[1:].split('}')[0]}
    return {'ns': NS_CORE}


def _gather_model(root: ET.Element, ns: dict, unit_scale_mm: float, model_path: str, limits: dict):
    meshes: Dict[str, Tuple[np.ndarray, np.ndarray]] = {}
    comps: Dict[str, List[Tuple[str, str, np.ndarray]]] = {}

    def _check(kind: str, limit: int, label: str) -> None:
        limits[kind] += 1
        if limits[kind] > limit:
            raise _limit_err(kind, limits[kind], limit, label)

    for obj in root.findall('.//ns:object', ns):
        _check("objects", MAX_3MF_OBJECTS, "MAX_3MF_OBJECTS")
        oid = obj.get('id')
        if not oid:
            raise MeshFormatError("Malformed 3MF: <object> missing required id attribute")
        mesh = obj.find('ns:mesh', ns)
        if mesh is not None:
            verts = []
            vs = mesh.find('ns:vertices', ns)
            for i, v in enumerate([] if vs is None else vs.findall('ns:vertex', ns)):
                _check("vertices", MAX_3MF_VERTICES, "MAX_3MF_VERTICES")
                try:
                    xyz = (float(v.get('x', '0')), float(v.get('y', '0')), float(v.get('z', '0')))
                except ValueError:
                    raise MeshFormatError(f"Malformed 3MF: bad vertex in object {oid} at index {i}") from None
                if not np.all(np.isfinite(xyz)):
                    raise MeshFormatError(f"Malformed 3MF: non-finite vertex in object {oid} at index {i}")
                verts.append(xyz)
            V = np.array(verts, dtype=np.float64).reshape(-1, 3) * unit_scale_mm

            tris = []
            ts = mesh.find('ns:triangles', ns)
            for i, t in enumerate([] if ts is None else ts.findall('ns:triangle', ns)):
                _check("triangles", MAX_3MF_TRIANGLES, "MAX_3MF_TRIANGLES")
                try:
                    tri = (int(t.get('v1')), int(t.get('v2')), int(t.get('v3')))
                except (TypeError, ValueError):
                    raise MeshFormatError(f"Invalid triangle in object {oid} at index {i}") from None
                if min(tri) < 0 or max(tri) >= V.shape[0]:
                    raise MeshFormatError(f"Invalid triangle in object {oid} at index {i}")
                tris.append(tri)
            T = np.array(tris, dtype=np.int64).reshape(-1, 3)
            meshes[oid] = (V, T)
        else:
            comp_list: List[Tuple[str, str, np.ndarray]] = []
            comps_node = obj.find('ns:components', ns)
            if comps_node is not None:
                for c in comps_node.findall('ns:component', ns):
                    _check("components", MAX_3MF_COMPONENTS, "MAX_3MF_COMPONENTS")
                    p_path = c.get(f'{{{NS_PROD}}}path') or c.get('path')
                    child_model = _norm_model_path(p_path) if p_path else _norm_model_path(model_path)
                    comp_list.append((child_model, c.get('objectid'), _parse_transform(c.get('transform'))))
            comps[oid] = comp_list
    return meshes, comps


def _build_model_cache(zf: zipfile.ZipFile, report: ParseReport) -> dict:
    cache = {}
    model_files = [f for f in zf.namelist() if f.startswith('3D/') and f.endswith('.model')]
    if not model_files:
        raise MeshFormatError("Malformed 3MF: no 3D/*.model entries")
    total_xml_bytes = 0
    limits = {"objects": 0, "components": 0, "vertices": 0, "triangles": 0}
    referenced = set()

    for mf in model_files:
        info = zf.getinfo(mf)
        if info.file_size > MAX_3MF_ENTRY_BYTES:
            raise _limit_err("entry_bytes", info.file_size, MAX_3MF_ENTRY_BYTES, "MAX_3MF_ENTRY_BYTES")
        total_xml_bytes += info.file_size
        if total_xml_bytes > MAX_3MF_TOTAL_XML_BYTES:
            raise _limit_err("total_xml_bytes", total_xml_bytes, MAX_3MF_TOTAL_XML_BYTES, "MAX_3MF_TOTAL_XML_BYTES")
        try:
            root = ET.fromstring(zf.read(mf))
        except ET.ParseError as e:
            raise MeshFormatError(f"Malformed 3MF: {mf}: {e}") from None
        ns = _ns(root)
        unit = root.get('unit') or 'millimeter'
        report.units.add(unit)
        scale = unit_to_mm(unit)
        logger.debug("3mf %s: unit=%s scale=%s", mf, unit, scale)
        meshes, comps = _gather_model(root, ns, scale, mf, limits)
        for lst in comps.values():
            report.component_count += len(lst)
            for child_model, _, _ in lst:
                if child_model.lower().endswith(".model"):
                    referenced.add(child_model)
                if child_model != _norm_model_path(mf):
                    report.external_p_path += 1
        cache[_norm_model_path(mf)] = {'meshes': meshes, 'comps': comps, 'root': root, 'ns': ns}

    missing = referenced - set(cache.keys())
    if missing:
        examples = ", ".join(sorted(missing)[:3])
        raise MeshFormatError(
            "3MF contains external components (production p:path) referencing missing model files: "
            f"{examples}"
        )
    return cache


def _flatten_object(cache: dict, model_file: str, oid: str, cum_M: np.ndarray, depth: int = 0):
    if depth > MAX_COMPONENT_DEPTH:
        raise MeshFormatError(f"3MF component nesting deeper than {MAX_COMPONENT_DEPTH} (cycle?)")
    entry = cache.get(model_file)
    if entry is None:
        raise MeshFormatError(f"3MF references missing model file {model_file}")

    if oid in entry['meshes']:
        V, T = entry['meshes'][oid]
        return _apply_transform(V, cum_M), T.copy()
    if oid not in entry['comps']:
        raise MeshFormatError(f"3MF references missing object {oid}")

    out_V, out_T, offset = [], [], 0
    for child_model, child_oid, M_child in entry['comps'][oid]:
        Vc, Tc = _flatten_object(cache, child_model, child_oid, cum_M @ M_child, depth + 1)
        if Vc.size == 0 or Tc.size == 0:
            continue
        out_V.append(Vc); out_T.append(Tc + offset)
        offset += Vc.shape[0]
    if out_V:
        return np.vstack(out_V), np.vstack(out_T)
    return np.zeros((0, 3), dtype=np.float64), np.zeros((0, 3), dtype=np.int64)


def parse_3mf_bytes(data: bytes, report: ParseReport | None = None) -> List[MeshPart]:
    report = report if report is not None else ParseReport()
    parts: List[MeshPart] = []
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        raise MeshFormatError("Malformed 3MF: not a zip archive") from None
    with zf:
        cache = _build_model_cache(zf, report)
        items_per_model = {}
        for mf, entry in cache.items():
            build = entry['root'].find('ns:build', entry['ns'])
            items = [] if build is None else build.findall('ns:item', entry['ns'])
            items_per_model[mf] = items
            report.item_count += len(items)

        with_items = [mf for mf, items in items_per_model.items() if items]
        for mf in (with_items or list(cache.keys())):
            items = items_per_model[mf]
            if not items:
                # Без <build> берём все объекты, на которые никто не ссылается.
                referenced = {ref for lst in cache[mf]['comps'].values() for _, ref, _ in lst}
                all_ids = (set(cache[mf]['meshes']) | set(cache[mf]['comps'])) - referenced
                for oid in sorted(all_ids):
                    V, T = _flatten_object(cache, mf, oid, np.eye(4))
                    if T.size:
                        parts.append(MeshPart(f"{os.path.basename(mf)}:object_{oid}", V, T))
                continue

            for idx, item in enumerate(items, 1):
                M = _parse_transform(item.get('transform'))
                report.det_values.append(float(np.linalg.det(M[:3, :3])))
                V, T = _flatten_object(cache, mf, item.get('objectid'), M)
                if T.size:
                    parts.append(MeshPart(f"{os.path.basename(mf)}:item_{idx}", V, T))
    return parts


# ---------- Единая точка входа ----------
def merge_parts(parts: List[MeshPart]) -> Mesh:
    if not parts:
        return Mesh.from_buffers(np.zeros((0, 3), dtype=np.float64), np.zeros((0, 3), dtype=np.int64))
    out_V, out_T, offset = [], [], 0
    for p in parts:
        out_V.append(p.vertices_mm); out_T.append(p.triangles + offset)
        offset += p.vertices_mm.shape[0]
    return Mesh.from_buffers(np.vstack(out_V), np.vstack(out_T))


def parse_mesh_parts(source: MeshSource, report: ParseReport | None = None) -> List[MeshPart]:
    report = report if report is not None else ParseReport()
    report.file_name = source.file_name
    report.kind = source.kind.value
    if source.kind is MeshSourceKind.TRIANGULATED:
        return parse_stl_bytes(source.data)
    if source.kind is MeshSourceKind.PACKAGED:
        return parse_3mf_bytes(source.data, report)
    raise MeshFormatError(f"unsupported mesh source kind: {source.kind!r}")


def parse_mesh_source(source: MeshSource, report: ParseReport | None = None) -> Mesh:
    """MeshSource -> Mesh (мм). Все части модели сливаются в один меш."""
    return merge_parts(parse_mesh_parts(source, report))


def load_mesh(path: str, report: ParseReport | None = None) -> Mesh:
    return parse_mesh_source(mesh_source_from_path(path), report)
