# -*- coding: utf-8 -*-
"""
slice_core.py — сечения меша плоскостью и стопка слоёв.

Это измерение (площадь/периметр/центроид каждого слоя), а НЕ генерация траекторий.

Алгоритм сечения одним треугольником:
  1) расстояния трёх вершин до плоскости;
  2) по каждому из трёх рёбер: вершина в пределах epsilon от плоскости -> точка;
     концы ребра строго по разные стороны -> точка пересечения (линейная интерполяция);
  3) >= 2 точек -> один отрезок между первыми двумя (вырожденные копланарные
     треугольники дают «первую пару», это упрощение).
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from geometry_core import (
    Mesh,
    MeshError,
    Vec3,
    compute_bounding_box,
    vec,
    vec_cross,
    vec_distance,
    vec_lerp,
    vec_normalize,
    vec_scale,
    vec_add,
)

logger = logging.getLogger(__name__)

DEFAULT_SLICE_THICKNESS = 0.05  # мм
MIN_EPSILON = 1e-4
MAX_AREA_POINTS = 64
UP: Vec3 = (0.0, 0.0, 1.0)

Segment = Tuple[Vec3, Vec3]


@dataclass(frozen=True)
class CrossSection:
    elevation: float
    segments: Tuple[Segment, ...]
    centroid: Vec3
    area: float
    perimeter: float
    bounding_radius: float

    @property
    def circumference(self) -> float:
        return self.perimeter

    @property
    def is_empty(self) -> bool:
        return not self.segments

    def to_dict(self, with_segments: bool = False) -> dict:
        out = {
            "elevation": self.elevation,
            "area_mm2": self.area,
            "perimeter_mm": self.perimeter,
            "centroid": list(self.centroid),
            "bounding_radius": self.bounding_radius,
            "segment_count": len(self.segments),
        }
        if with_segments:
            out["segments"] = [[list(a), list(b)] for a, b in self.segments]
        return out


def _plane_basis(normal: Vec3) -> Tuple[Vec3, Vec3]:
    arbitrary = (0.0, 0.0, 1.0) if abs(normal[2]) < 0.9 else (0.0, 1.0, 0.0)
    u = vec_normalize(vec_cross(arbitrary, normal))
    v = vec_normalize(vec_cross(normal, u))
    return u, v


def polygon_area(points_2d: np.ndarray) -> float:
    """
    Shoelace по точкам сечения.

    Точки идут в порядке обхода треугольников, а не по контуру, поэтому
    перед формулой убираем дубликаты и упорядочиваем по полярному углу вокруг
    их среднего (корректно для звёздных контуров).
    """
    if points_2d.shape[0] < 3:
        return 0.0
    pts = np.unique(np.round(points_2d, 9), axis=0)
    if pts.shape[0] < 3:
        return 0.0
    c = pts.mean(axis=0)
    order = np.argsort(np.arctan2(pts[:, 1] - c[1], pts[:, 0] - c[0]), kind="stable")
    pts = pts[order]
    x = pts[:, 0]; y = pts[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y)) * 0.5)


def slice_plane(
    mesh: Mesh,
    origin: Sequence[float],
    normal: Sequence[float],
    thickness: float = DEFAULT_SLICE_THICKNESS,
    *,
    elevation: float = 0.0,
) -> CrossSection:
    """Одно сечение меша плоскостью (origin, normal). Промах мимо меша — пустое сечение."""
    if mesh is None or mesh.positions is None:
        raise MeshError("missing position data")
    origin = vec(origin)
    try:
        normal = vec_normalize(vec(normal))
    except ValueError:
        raise MeshError(f"slice normal must be non-zero, got {tuple(normal)!r}") from None
    eps = max(float(thickness), MIN_EPSILON)

    tris = mesh.triangles()
    if tris.shape[0] == 0:
        return _empty_section(elevation)

    d = (tris - np.array(origin)) @ np.array(normal)  # (K, 3)
    # Кандидаты: треугольник касается плоскости или пересекает её.
    candidates = np.nonzero((d.min(axis=1) <= eps) & (d.max(axis=1) >= -eps))[0]

    segments: List[Segment] = []
    points: List[Vec3] = []
    for k in candidates:
        verts = [vec(tris[k, i]) for i in range(3)]
        dist = [float(d[k, i]) for i in range(3)]
        local: List[Vec3] = []
        for e in range(3):
            n = (e + 1) % 3
            if abs(dist[e]) <= eps:
                local.append(verts[e])
            if dist[e] * dist[n] < 0:
                t = dist[e] / (dist[e] - dist[n])
                local.append(vec_lerp(verts[e], verts[n], t))
        if len(local) >= 2:
            segments.append((local[0], local[1]))
            points.extend(local)

    if not segments:
        return _empty_section(elevation)

    P = np.array(points, dtype=np.float64)
    centroid = vec(P.mean(axis=0))
    bounding_radius = float(np.max(np.linalg.norm(P - np.array(origin), axis=1)))
    perimeter = sum(vec_distance(a, b) for a, b in segments)

    u, v = _plane_basis(normal)
    rel = P[:MAX_AREA_POINTS] - np.array(origin)
    projected = np.stack([rel @ np.array(u), rel @ np.array(v)], axis=1)
    area = polygon_area(projected)

    return CrossSection(
        elevation=float(elevation),
        segments=tuple(segments),
        centroid=centroid,
        area=area,
        perimeter=float(perimeter),
        bounding_radius=bounding_radius,
    )


def _empty_section(elevation: float) -> CrossSection:
    return CrossSection(
        elevation=float(elevation),
        segments=(),
        centroid=(0.0, 0.0, 0.0),
        area=0.0,
        perimeter=0.0,
        bounding_radius=0.0,
    )


# ---------- Стопка слоёв ----------
def _start_corner(bbox_min: Vec3, bbox_max: Vec3, orientation: Vec3) -> Vec3:
    return tuple(lo if o >= 0 else hi for lo, hi, o in zip(bbox_min, bbox_max, orientation))


def layer_count_for(extent: float, layer_height: float) -> int:
    # 1e-9 гасит шум вида 20/0.2 = 100.00000000000001
    return max(1, int(math.ceil(extent / layer_height - 1e-9)))


def slice_layers(
    mesh: Mesh,
    orientation: Sequence[float] = UP,
    layer_height: float = 0.2,
    thickness: float | None = None,
) -> List[CrossSection]:
    """
    Стопка сечений от нижнего края меша до верхнего с шагом layer_height.
    Порядок: по возрастанию elevation.

    Толщина сечения по умолчанию min(DEFAULT_SLICE_THICKNESS, layer_height / 2),
    а не вся высота слоя: иначе плоскость забирает вершины соседнего слоя.
    Явный thickness заменяет это значение.
    """
    if mesh is None or mesh.positions is None:
        raise MeshError("missing position data")
    layer_height = float(layer_height)
    if not math.isfinite(layer_height) or layer_height <= 0:
        raise ValueError(f"layer_height must be > 0, got {layer_height!r}")
    try:
        direction = vec_normalize(vec(orientation))
    except ValueError:
        raise MeshError(f"orientation must be non-zero, got {tuple(orientation)!r}") from None
    if thickness is None:
        thickness = min(DEFAULT_SLICE_THICKNESS, layer_height / 2.0)

    bbox = compute_bounding_box(mesh.positions)
    start = _start_corner(bbox.min, bbox.max, direction)
    size = bbox.size
    extent = sum(abs(o) * s for o, s in zip(direction, size))
    count = layer_count_for(extent, layer_height)
    logger.debug("slice_layers: extent=%.4f mm, layer_height=%.4f mm, layers=%d", extent, layer_height, count)

    layers: List[CrossSection] = []
    for i in range(count):
        elevation = layer_height * i
        origin = vec_add(start, vec_scale(direction, elevation))
        layers.append(slice_plane(mesh, origin, direction, thickness, elevation=elevation))
    return layers


def layers_volume_mm3(layers: Sequence[CrossSection], layer_height: float) -> float:
    """Грубая оценка объёма Σ(area × h); точный объём — analyze_mesh."""
    return float(sum(layer.area * layer_height for layer in layers))


@dataclass(frozen=True)
class LayerStack:
    layer_height: float
    orientation: Vec3
    layers: Tuple[CrossSection, ...] = field(default_factory=tuple)

    @property
    def volume_mm3(self) -> float:
        return layers_volume_mm3(self.layers, self.layer_height)

    @property
    def max_area(self) -> float:
        return max((layer.area for layer in self.layers), default=0.0)

    def centroid_trend(self) -> List[Vec3]:
        return [layer.centroid for layer in self.layers if not layer.is_empty]

    def to_dict(self, with_segments: bool = False) -> dict:
        return {
            "layer_height_mm": self.layer_height,
            "orientation": list(self.orientation),
            "layer_count": len(self.layers),
            "volume_mm3": self.volume_mm3,
            "layers": [layer.to_dict(with_segments) for layer in self.layers],
        }


def build_layer_stack(
    mesh: Mesh,
    orientation: Sequence[float] = UP,
    layer_height: float = 0.2,
    thickness: float | None = None,
) -> LayerStack:
    layers = slice_layers(mesh, orientation, layer_height, thickness)
    return LayerStack(
        layer_height=float(layer_height),
        orientation=vec_normalize(vec(orientation)),
        layers=tuple(layers),
    )
