from __future__ import annotations

import math
import struct
import zipfile
from pathlib import Path

import numpy as np
import trimesh

from geometry_core import Mesh

CORE_NS = "http://schemas.microsoft.com/3dmanufacturing/core/2015/02"
PROD_NS = "http://schemas.microsoft.com/3dmanufacturing/production/2015/06"


def box_mesh(extents=(20.0, 20.0, 20.0), center=(0.0, 0.0, 0.0)) -> Mesh:
    tm = trimesh.creation.box(extents=extents)
    tm.apply_translation(center)
    return Mesh.from_buffers(np.array(tm.vertices), np.array(tm.faces))


def cylinder_mesh(radius: float = 10.0, height: float = 20.0, sections: int = 16) -> Mesh:
    """Цилиндр вдоль Z от 0 до height; боковые треугольники идут первыми."""
    ang = np.arange(sections) * (2.0 * math.pi / sections)
    ring = np.stack([radius * np.cos(ang), radius * np.sin(ang)], axis=1)
    bottom = np.hstack([ring, np.zeros((sections, 1))])
    top = np.hstack([ring, np.full((sections, 1), height)])
    V = np.vstack([bottom, top, [[0.0, 0.0, 0.0], [0.0, 0.0, height]]])
    cb, ct = 2 * sections, 2 * sections + 1

    side, caps = [], []
    for i in range(sections):
        j = (i + 1) % sections
        a0, a1, b0, b1 = i, j, sections + i, sections + j
        side.append([a0, a1, b1])
        side.append([a0, b1, b0])
        caps.append([cb, a1, a0])
        caps.append([ct, b0, b1])
    return Mesh.from_buffers(V, np.array(side + caps, dtype=np.int64))


def triangle_soup(mesh: Mesh) -> np.ndarray:
    return np.asarray(mesh.triangles(), dtype=np.float64)


def write_binary_stl(path: Path, soup) -> Path:
    soup = np.asarray(soup, dtype=np.float32).reshape(-1, 3, 3)
    data = bytearray(b"binary-test".ljust(80, b"\0"))
    data.extend(struct.pack("<I", soup.shape[0]))
    for tri in soup:
        data.extend(struct.pack("<3f", 0.0, 0.0, 0.0))
        data.extend(struct.pack("<9f", *tri.reshape(-1).tolist()))
        data.extend(struct.pack("<H", 0))
    path.write_bytes(bytes(data))
    return path


def write_ascii_stl(path: Path, soup, name: str = "part") -> Path:
    lines = [f"solid {name}"]
    for tri in np.asarray(soup, dtype=np.float64).reshape(-1, 3, 3):
        lines.append("  facet normal 0 0 0")
        lines.append("    outer loop")
        for x, y, z in tri:
            lines.append(f"      vertex {x:.6f} {y:.6f} {z:.6f}")
        lines.append("    endloop")
        lines.append("  endfacet")
    lines.append(f"endsolid {name}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def mesh_object_xml(object_id: str, vertices, triangles) -> str:
    verts = "\n".join(f'        <vertex x="{x}" y="{y}" z="{z}" />' for x, y, z in vertices)
    tris = "\n".join(f'        <triangle v1="{a}" v2="{b}" v3="{c}" />' for a, b, c in triangles)
    return (
        f'    <object id="{object_id}" type="model">\n'
        "      <mesh>\n"
        f"      <vertices>\n{verts}\n      </vertices>\n"
        f"      <triangles>\n{tris}\n      </triangles>\n"
        "      </mesh>\n"
        "    </object>\n"
    )


def model_xml(resources: str, build: str = "", unit: str = "millimeter") -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<model unit="{unit}" xmlns="{CORE_NS}" xmlns:p="{PROD_NS}">\n'
        f"  <resources>\n{resources}  </resources>\n"
        f"  <build>\n{build}  </build>\n"
        "</model>\n"
    )


def write_3mf(path: Path, main_xml: str, extra: dict | None = None) -> Path:
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("3D/3dmodel.model", main_xml)
        for name, body in (extra or {}).items():
            zf.writestr(name, body)
    return path
