from __future__ import annotations

import json

from overlay_surface.geometry_store import GeometryStore, OverlayGeometry


def test_missing_file_gives_defaults(tmp_path):
    geometry = GeometryStore(tmp_path / "overlay-config.json").load()

    assert geometry == OverlayGeometry(x=100, y=100, width=400, height=600, visible=False)


def test_save_and_load(tmp_path):
    store = GeometryStore(tmp_path / "sub" / "overlay-config.json")
    store.save(OverlayGeometry(x=5, y=6, width=700, height=300, visible=True))

    assert store.load() == OverlayGeometry(x=5, y=6, width=700, height=300, visible=True)
    assert not (tmp_path / "sub" / "overlay-config.json.tmp").exists()


def test_partial_and_invalid_values_use_defaults(tmp_path):
    path = tmp_path / "overlay-config.json"
    path.write_text(json.dumps({"x": "left", "width": 50, "visible": True}), encoding="utf-8")

    geometry = GeometryStore(path).load()

    assert geometry.x == 100
    assert geometry.width == 120
    assert geometry.height == 600
    assert geometry.visible is True


def test_visible_flag_written_as_text(tmp_path):
    path = tmp_path / "overlay-config.json"
    path.write_text(json.dumps({"visible": "false"}), encoding="utf-8")
    assert GeometryStore(path).load().visible is False

    path.write_text(json.dumps({"visible": "yes"}), encoding="utf-8")
    assert GeometryStore(path).load().visible is True

    path.write_text(json.dumps({"visible": [1]}), encoding="utf-8")
    assert GeometryStore(path).load().visible is False


def test_corrupt_file_gives_defaults(tmp_path):
    path = tmp_path / "overlay-config.json"
    path.write_text("not json", encoding="utf-8")

    assert GeometryStore(path).load() == OverlayGeometry()


def test_moved_keeps_visibility():
    geometry = OverlayGeometry(visible=True).moved(1, 2, 300, 200)

    assert geometry.rect == (1, 2, 300, 200)
    assert geometry.visible is True
    assert geometry.with_visible(False).rect == (1, 2, 300, 200)
