# -*- coding: utf-8 -*-
"""
geometry_core.py — геометрическое ядро: буферы меша и их анализ.

Цели:
- Один источник правды для габаритов, числа треугольников и объёма меша.
- Никакого UI, никакого файлового I/O, никакого глобального состояния.
- Векторы — неизменяемые кортежи (x, y, z) + свободные функции dot/cross/distance.

Объём считается через сумму знаковых тетраэдров (a · (b × c)) / 6 относительно
начала координат. Для замкнутого и согласованно ориентированного меша это точный
объём; для открытого/несогласованного меша результат неверен по величине
(ограничение метода, а не фатальная ошибка) — см. флаги watertight/winding_consistent.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import trimesh

logger = logging.getLogger(__name__)

Vec3 = Tuple[float, float, float]


class MeshError(ValueError):
    """Ошибка геометрии: нет позиций, битые индексы, незамкнутый меш при require_closed."""


# ---------- Векторы ----------
def vec(x, y=None, z=None) -> Vec3:
    if y is None and z is None:
        x, y, z = x
    return (float(x), float(y), float(z))


def vec_add(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2])


def vec_sub(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2])


def vec_scale(a: Vec3, s: float) -> Vec3:
    return (a[0] * s, a[1] * s, a[2] * s)


def vec_dot(a: Vec3, b: Vec3) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def vec_cross(a: Vec3, b: Vec3) -> Vec3:
    return (
        a[1] * b[2] - a[2] * b[1],
        a[2] * b[0] - a[0] * b[2],
        a[0] * b[1] - a[1] * b[0],
    )


def vec_length(a: Vec3) -> float:
    return math.sqrt(vec_dot(a, a))


def vec_distance(a: Vec3, b: Vec3) -> float:
    return vec_length(vec_sub(a, b))


def vec_lerp(a: Vec3, b: Vec3, t: float) -> Vec3:
    return (
        a[0] + (b[0] - a[0]) * t,
        a[1] + (b[1] - a[1]) * t,
        a[2] + (b[2] - a[2]) * t,
    )


def vec_normalize(a: Vec3) -> Vec3:
    n = vec_length(a)
    if n <= 0 or not math.isfinite(n):
        raise ValueError(f"cannot normalize zero-length vector {a!r}")
    return (a[0] / n, a[1] / n, a[2] / n)


# ---------- Буферы меша ----------
@dataclass(frozen=True)
class Mesh:
    """
    Буферы треугольного меша (мм).

    positions: (N, 3) float64 — вершины.
    indices:   (M, 3) int64 или None — тройки индексов; если None, позиции
               читаются подряд тройками (неиндексированный меш).

    from_buffers копирует входные буферы и помечает копии read-only, так что
    последующие правки массива вызывающей стороны меш не меняют.
    """
    positions: Optional[np.ndarray]
    indices: Optional[np.ndarray] = None

    @classmethod
    def from_buffers(cls, positions, indices=None) -> "Mesh":
        if positions is None:
            raise MeshError("missing position data")
        P = np.array(positions, dtype=np.float64)
        if P.size % 3 != 0:
            raise MeshError(f"positions length must be a multiple of 3, got {P.size}")
        P = P.reshape(-1, 3)

        T = None
        if indices is not None:
            I = np.asarray(indices)
            if I.size % 3 != 0:
                raise MeshError(f"indices length must be a multiple of 3, got {I.size}")
            if I.size and not np.issubdtype(I.dtype, np.integer):
                raise MeshError("indices must be integers")
            T = I.astype(np.int64).reshape(-1, 3)
            if T.size:
                lo, hi = int(T.min()), int(T.max())
                if lo < 0 or hi >= P.shape[0]:
                    raise MeshError(
                        f"triangle index out of range: [{lo}, {hi}] for {P.shape[0]} vertices"
                    )
            T.setflags(write=False)
        P.setflags(write=False)
        return cls(positions=P, indices=T)

    @property
    def is_indexed(self) -> bool:
        return self.indices is not None and self.indices.size > 0

    @property
    def vertex_count(self) -> int:
        return 0 if self.positions is None else int(self.positions.shape[0])

    @property
    def triangle_count(self) -> int:
        if self.is_indexed:
            return int(self.indices.shape[0])
        return self.vertex_count // 3

    def triangles(self) -> np.ndarray:
        """(K, 3, 3) — координаты вершин каждого треугольника."""
        if self.positions is None:
            raise MeshError("missing position data")
        if self.is_indexed:
            return self.positions[self.indices]
        k = self.vertex_count // 3
        return self.positions[: k * 3].reshape(k, 3, 3)


def empty_mesh() -> Mesh:
    return Mesh.from_buffers(np.zeros((0, 3), dtype=np.float64))


# ---------- Метрики ----------
@dataclass(frozen=True)
class BoundingBox:
    min: Vec3
    max: Vec3

    @property
    def size(self) -> Vec3:
        return vec_sub(self.max, self.min)

    @property
    def center(self) -> Vec3:
        return vec_scale(vec_add(self.min, self.max), 0.5)


@dataclass(frozen=True)
class VolumeMetrics:
    signed_mm3: float
    absolute_mm3: float


@dataclass(frozen=True)
class GeometryMetrics:
    bbox: BoundingBox
    size: Vec3
    center: Vec3
    triangle_count: int
    vertex_count: int
    volume: VolumeMetrics
    watertight: bool
    winding_consistent: bool

    def to_dict(self) -> dict:
        return {
            "bbox": {"min": list(self.bbox.min), "max": list(self.bbox.max)},
            "size": list(self.size),
            "center": list(self.center),
            "triangle_count": self.triangle_count,
            "vertex_count": self.vertex_count,
            "volume": {"signed_mm3": self.volume.signed_mm3, "absolute_mm3": self.volume.absolute_mm3},
            "watertight": self.watertight,
            "winding_consistent": self.winding_consistent,
        }


def compute_bounding_box(positions: np.ndarray) -> BoundingBox:
    if positions is None or positions.size == 0:
        return BoundingBox(min=(0.0, 0.0, 0.0), max=(0.0, 0.0, 0.0))
    mins = positions.min(axis=0)
    maxs = positions.max(axis=0)
    return BoundingBox(min=vec(mins), max=vec(maxs))


def signed_volume_mm3(mesh: Mesh) -> float:
    if mesh.triangle_count == 0:
        return 0.0
    tris = mesh.triangles()
    v0 = tris[:, 0]; v1 = tris[:, 1]; v2 = tris[:, 2]
    vol6 = np.einsum('ij,ij->i', v0, np.cross(v1, v2))
    return float(vol6.sum()) / 6.0


def _closure_flags(mesh: Mesh) -> Tuple[bool, bool]:
    # Вершины сливаются (process=True), иначе неиндексированный меш никогда не будет замкнут.
    if mesh.triangle_count == 0:
        return False, False
    tris = mesh.triangles()
    tm = trimesh.Trimesh(
        vertices=tris.reshape(-1, 3),
        faces=np.arange(tris.shape[0] * 3, dtype=np.int64).reshape(-1, 3),
        process=True,
    )
    return bool(tm.is_watertight), bool(tm.is_winding_consistent)


def analyze_mesh(mesh: Optional[Mesh], *, require_closed: bool = False) -> GeometryMetrics:
    """
    Mesh -> GeometryMetrics.

    Пустой меш (нет вершин) — нулевые метрики, не ошибка.
    require_closed=True: незамкнутый или несогласованно ориентированный меш -> MeshError.
    """
    if mesh is None or mesh.positions is None:
        raise MeshError("missing position data")

    bbox = compute_bounding_box(mesh.positions)
    signed = signed_volume_mm3(mesh)
    watertight, winding_ok = _closure_flags(mesh)

    if require_closed and mesh.triangle_count > 0 and not (watertight and winding_ok):
        raise MeshError(
            "mesh is not closed and consistently wound; volume would be unreliable "
            f"(watertight={watertight}, winding_consistent={winding_ok})"
        )
    if mesh.triangle_count > 0 and not watertight:
        logger.debug("open mesh: volume %.3f mm3 is best-effort", abs(signed))

    return GeometryMetrics(
        bbox=bbox,
        size=bbox.size,
        center=bbox.center,
        triangle_count=mesh.triangle_count,
        vertex_count=mesh.vertex_count,
        volume=VolumeMetrics(signed_mm3=signed, absolute_mm3=abs(signed)),
        watertight=watertight,
        winding_consistent=winding_ok,
    )


# ---------- Нормализация ----------
def normalize_mesh(mesh: Mesh, unit_scale_mm: float = 1.0) -> Tuple[Mesh, Vec3]:
    """
    Масштаб в мм + перенос центра bbox в начало координат.
    Возвращает (новый меш, применённый перенос). Исходный меш не трогается.
    """
    if mesh is None or mesh.positions is None:
        raise MeshError("missing position data")
    s = float(unit_scale_mm)
    if not math.isfinite(s) or s <= 0:
        raise MeshError(f"unit scale must be > 0, got {unit_scale_mm!r}")
    P = mesh.positions * s
    if P.size == 0:
        return Mesh.from_buffers(P, mesh.indices), (0.0, 0.0, 0.0)
    center = compute_bounding_box(P).center
    shift = vec_scale(center, -1.0)
    P = P + np.array(shift, dtype=np.float64)
    return Mesh.from_buffers(P, mesh.indices), shift
