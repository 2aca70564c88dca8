import io
import json
import logging

import pytest

from emrunner.frames import (
    FrameLocation,
    Level,
    LogFrame,
    ModulePath,
    create_module_path,
    frame_from_json,
    frame_to_json,
    read_ndjson,
    write_ndjson,
)


def test_level_from_tag():
    assert Level.from_tag("defmt_warn") is Level.WARN
    assert Level.from_tag("defmt_println") is None
    assert Level.from_tag("defmt_str") is None
    assert Level.TRACE.logging_level == logging.DEBUG
    assert Level.WARN.logging_level == logging.WARNING


def test_create_module_path():
    assert create_module_path("app::tests::it_works") == ModulePath("app", ("tests",), "it_works")
    assert create_module_path("app::main") == ModulePath("app", (), "main")
    assert create_module_path("app") is None
    assert create_module_path("") is None
    assert str(ModulePath("a", ("b", "c"), "f")) == "a::b::c::f"


def test_location_str():
    assert LogFrame(text="x", host_timestamp=0).location_str() == "no-location"
    partial = LogFrame(text="x", host_timestamp=0, location=FrameLocation(file="a.rs", line=1))
    assert partial.location_str() == "no-location"
    full = FrameLocation(file="src/main.rs", line=9, module_path=ModulePath("app", (), "main"))
    assert LogFrame(text="x", host_timestamp=0, location=full).location_str() == "src/main.rs:9 in app::main"


def test_json_shape():
    frame = LogFrame(
        text="hello",
        host_timestamp=42,
        level=Level.INFO,
        location=FrameLocation(file="src/main.rs", line=9, module_path=ModulePath("app", ("m",), "f")),
        target_timestamp="0.000001",
    )
    assert frame_to_json(frame) == {
        "data": "hello",
        "host_timestamp": 42,
        "level": "INFO",
        "location": {
            "file": "src/main.rs",
            "line": 9,
            "module_path": {"crate_name": "app", "modules": ["m"], "function": "f"},
        },
        "target_timestamp": "0.000001",
    }


def test_from_json_coerces_loose_input():
    frame = frame_from_json(
        {"data": "x", "host_timestamp": "0x10", "level": "warn", "location": {"file": "a.rs", "line": "3"}}
    )
    assert frame.host_timestamp == 16
    assert frame.level is Level.WARN
    assert frame.location.line == 3
    assert frame.location.module_path is None
    assert frame.target_timestamp == ""


@pytest.mark.parametrize(
    "record",
    [
        {"host_timestamp": 1},
        {"data": "x"},
        {"data": "x", "host_timestamp": 1, "level": "LOUD"},
        {"data": "x", "host_timestamp": True},
        {"data": "x", "host_timestamp": 1, "location": {"module_path": {"crate_name": "a"}}},
    ],
)
def test_from_json_rejects_invalid_records(record):
    with pytest.raises(ValueError):
        frame_from_json(record)


def test_ndjson_file(tmp_path):
    frames = [
        LogFrame(text="one", host_timestamp=1, level=Level.DEBUG),
        LogFrame(text="two", host_timestamp=2),
    ]
    path = tmp_path / "defmt.json"
    write_ndjson(frames, path)
    lines = path.read_text().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1])["level"] is None
    assert read_ndjson(path) == frames
    assert read_ndjson(io.StringIO(path.read_text() + "\n\n")) == frames
