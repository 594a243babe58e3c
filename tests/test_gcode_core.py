from __future__ import annotations

import pytest

from gcode_core import load_gcode_override, parse_motion_program


def test_absolute_square_perimeter():
    program = """
      ; Simple square perimeter
      G90 ; absolute positioning
      M82 ; absolute extrusion
      G1 X10 Y0 F1200
      G1 X10 Y10 E1
      G1 X0 Y10 E2 F600
      G1 X0 Y0
    """
    est = parse_motion_program(program)
    assert est.time_s == pytest.approx(3.0)
    assert est.filament_len_mm == pytest.approx(2.0)
    assert est.extrusion_distance_mm == pytest.approx(20.0)
    assert est.travel_distance_mm == pytest.approx(20.0)


def test_relative_moves_ignore_retraction():
    program = """
      G91 ; relative positioning
      M83 ; relative extrusion
      G1 X10 F1200
      G1 Y10 E0.5
      G1 X-10 E0.5
      G1 Y-10 E-0.2 ; retraction should not add filament
    """
    est = parse_motion_program(program)
    assert est.time_s == pytest.approx(2.0)
    assert est.filament_len_mm == pytest.approx(1.0)
    assert est.extrusion_distance_mm == pytest.approx(20.0)
    assert est.travel_distance_mm == pytest.approx(20.0)


def test_g92_resets_extruder():
    program = """
      G90
      M82
      G92 E0
      G1 X0 Y0 F600
      G1 X10 E5
      G92 E0
      G1 X20 E4
    """
    est = parse_motion_program(program)
    assert est.time_s == pytest.approx(2.0)
    assert est.filament_len_mm == pytest.approx(9.0)
    assert est.travel_distance_mm == pytest.approx(0.0)


def test_g92_sets_position_without_motion():
    est = parse_motion_program("G1 X10 F600\nG92 X0\nG1 X5\n")
    # 10 мм + 5 мм при 10 мм/с
    assert est.time_s == pytest.approx(1.5)


def test_no_feed_rate_means_no_time():
    est = parse_motion_program("G1 X10 Y10 E1\nG0 X0\n")
    assert est.time_s == 0.0
    assert est.filament_len_mm == pytest.approx(1.0)


def test_non_positive_feed_rate_clears_active_feed():
    est = parse_motion_program("G1 X10 F600\nG1 X20 F0\nG1 X30\nG1 X40 F1200\n")
    # 10 мм при 10 мм/с, затем 20 мм без подачи, затем 10 мм при 20 мм/с
    assert est.time_s == pytest.approx(1.5)


def test_comments_case_and_line_numbers():
    program = """
      n10 g1 x10 f600 (first move) *71
      N11 G1 X20 ; trailing comment
      (whole line comment)
      ;another comment
    """
    est = parse_motion_program(program)
    assert est.time_s == pytest.approx(2.0)
    assert est.travel_distance_mm == pytest.approx(20.0)


def test_garbage_lines_are_skipped():
    program = "G1 X10 F600\nhello world\nG\nG1 Xabc Y\nM104 S200\nG28\nG1 X20\n"
    est = parse_motion_program(program)
    assert est.time_s == pytest.approx(2.0)


def test_z_moves_and_arcs():
    # G2/G3 не двигают оценку; Z учитывается в расстоянии
    est = parse_motion_program("G1 X3 Z4 F600\nG1 X0\nG2 X0 Y9 I1 J1\n")
    assert est.time_s == pytest.approx(0.8)


def test_empty_program():
    est = parse_motion_program("")
    assert est.time_s == 0.0
    assert est.filament_len_mm == 0.0
    assert parse_motion_program(None).to_dict()["travel_distance_mm"] == 0.0


def test_load_gcode_override(tmp_path):
    path = tmp_path / "part.gcode"
    path.write_text("G90\nM82\nG1 X10 E2 F600\n", encoding="utf-8")
    ov = load_gcode_override(str(path))
    assert ov.source_file_name == "part.gcode"
    assert ov.time_s == pytest.approx(1.0)
    assert ov.filament_len_mm == pytest.approx(2.0)
