"""
Test the file-level flows: decrypt/encrypt/auto on files, folder mapping
with the .time artifact, reports, config loading and the command line.
"""
import os
import csv
import json
import shutil
import struct
import tempfile

from main import main as cli_main
from hdkrecover.config import IVSpace, SearchConfig, config_from_dict, load_config
from hdkrecover.errors import ConfigurationError, MissingDisambiguatorError
from hdkrecover.keystream import RecoveryStatus, encrypt, iv_to_bytes
from hdkrecover.manager import (
    RecoveryManager,
    collect_entries,
    read_timestamp,
    write_timestamp,
)
from hdkrecover.naming import afs_hash, digest_to_name
from hdkrecover.signatures import TypeTag

KEY = bytes.fromhex("80e3a2b1c4d50f6172839aabbccddeef")
XML = b'<?xml version="1.0"?>\n<OBJECT><NAME>Lamp</NAME></OBJECT>\n'
SCENELIST = (b'<SCENELIST>\n'
             b'  <SCENE file="textures/texture700.dds"/>\n'
             b'</SCENELIST>\n')
TIMESTAMP = 1262304000


def small_search() -> SearchConfig:
    return SearchConfig(
        iv_spaces={tag: IVSpace(low_stop=0x400) for tag in TypeTag},
        segment_count_max=64,
        batch_size=256,
    )


def _write(path, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def _read(path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def make_extracted_scene(root: str) -> str:
    """Lay out a folder the way an archive extractor leaves it."""
    src = os.path.join(root, "scene")
    _write(os.path.join(src, digest_to_name(afs_hash("scenelist.xml"))), SCENELIST)
    _write(os.path.join(src, digest_to_name(afs_hash("textures/texture003.dds"))),
           b"DDS " + bytes(16))
    _write(os.path.join(src, digest_to_name(afs_hash("textures/texture700.dds"))),
           b"DDS " + bytes(32))
    _write(os.path.join(src, "DEADBEEF"), bytes(8))
    _write(os.path.join(src, "notes", "readme.md"), b"hello\n")
    write_timestamp(os.path.join(src, ".time"), TIMESTAMP)
    return src


def test_timestamp_codec():
    print("── Test: .time codec ──")
    tmp = tempfile.mkdtemp()
    try:
        path = os.path.join(tmp, ".time")
        write_timestamp(path, TIMESTAMP)
        assert _read(path) == struct.pack("<I", TIMESTAMP)
        assert read_timestamp(path) == TIMESTAMP

        _write(path, b"\x01\x02\x03")
        try:
            read_timestamp(path)
        except ValueError:
            pass
        else:
            raise AssertionError("3-byte timestamp accepted")
        print("  ✅ .time codec: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_config_loading():
    print("── Test: config loading ──")
    search, mapping = config_from_dict({
        "search": {"iv_spaces": {"RawXML": {"low_stop": 4096, "high_words": [0, 1]}},
                   "segment_count_max": 1024, "workers": 4},
        "map": {"harvest": False, "workers": 0},
    })
    assert search.iv_space(TypeTag.RAW_XML) == IVSpace(high_words=(0, 1), low_stop=4096)
    assert len(search.iv_space(TypeTag.RAW_XML)) == 8192
    assert search.iv_space(TypeTag.LUA_SCRIPT) == IVSpace()
    assert search.segment_counts == range(1, 1025)
    assert search.workers == 4
    assert mapping.harvest is False and mapping.workers == 0

    for bad in ({"searhc": {}},
                {"search": {"speed": 11}},
                {"search": {"iv_spaces": {"RawXML": {"low_end": 3}}}},
                {"search": {"segment_count_min": 9, "segment_count_max": 3}}):
        try:
            config_from_dict(bad)
        except ConfigurationError:
            continue
        raise AssertionError(f"accepted {bad}")

    tmp = tempfile.mkdtemp()
    try:
        path = os.path.join(tmp, "bad.json")
        _write(path, b"{not json")
        try:
            load_config(path)
        except ConfigurationError:
            pass
        else:
            raise AssertionError("broken JSON accepted")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)
    print("  ✅ config loading: PASS")


def test_decrypt_file():
    print("── Test: decrypt file ──")
    tmp = tempfile.mkdtemp()
    try:
        manager = RecoveryManager(small_search())
        enc = os.path.join(tmp, "object.xml.enc")
        out = os.path.join(tmp, "object.xml")
        _write(enc, encrypt(XML, KEY, 5))

        result = manager.decrypt_file(enc, out, KEY)
        assert result.ok and result.matched_type is TypeTag.RAW_XML
        assert result.iv == iv_to_bytes(5)
        assert _read(out) == XML

        # Existing output is left alone unless asked
        try:
            manager.decrypt_file(enc, out, KEY)
        except FileExistsError:
            pass
        else:
            raise AssertionError("output overwritten without overwrite=True")
        assert manager.decrypt_file(enc, out, KEY, overwrite=True).ok

        # No match: nothing is written
        missing = os.path.join(tmp, "nothing.bin")
        result = manager.decrypt_file(enc, missing, KEY, TypeTag.LUA_SCRIPT)
        assert result.status is RecoveryStatus.NO_MATCH
        assert not os.path.exists(missing)
        print("  ✅ decrypt file: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_auto_file():
    print("── Test: auto file ──")
    tmp = tempfile.mkdtemp()
    try:
        manager = RecoveryManager(small_search())
        bar = struct.pack(">I", 0xADEF17E1) + bytes(range(120))
        src = os.path.join(tmp, "archive.bar")
        enc = os.path.join(tmp, "archive.sharc")
        back = os.path.join(tmp, "archive.out")
        _write(src, bar)

        first = manager.auto_file(src, enc, KEY)
        assert first.action == "encrypt"
        assert _read(enc) == encrypt(bar, KEY, 0)

        second = manager.auto_file(enc, back, KEY)
        assert second.action == "decrypt"
        assert second.detected_type is TypeTag.BAR_MAGIC
        assert _read(back) == bar

        manager.encrypt_file(src, os.path.join(tmp, "iv9.bin"), KEY, iv_to_bytes(9))
        assert _read(os.path.join(tmp, "iv9.bin")) == encrypt(bar, KEY, 9)
        print("  ✅ auto file: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_collect_entries():
    print("── Test: collect entries ──")
    tmp = tempfile.mkdtemp()
    try:
        src = make_extracted_scene(tmp)
        entries = collect_entries(src)
        names = [e.rel_path for e in entries]
        assert ".time" not in names
        assert len(entries) == 5
        hashed = {e.rel_path for e in entries if e.hash_named}
        assert "DEADBEEF" in hashed and "notes/readme.md" not in hashed
        readme = next(e for e in entries if e.rel_path == "notes/readme.md")
        assert readme.digest == afs_hash("notes/readme.md")
        print("  ✅ collect entries: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_map_directory():
    print("── Test: map directory ──")
    tmp = tempfile.mkdtemp()
    try:
        src = make_extracted_scene(tmp)
        dst = os.path.join(tmp, "out")
        manager = RecoveryManager()
        session = manager.map_directory(src, dst, mode="fast", scope="scene")

        # Mapped entries under their path, the harvested one included
        assert _read(os.path.join(dst, "scenelist.xml")) == SCENELIST
        assert os.path.isfile(os.path.join(dst, "textures", "texture003.dds"))
        assert os.path.isfile(os.path.join(dst, "textures", "texture700.dds"))
        # Unmapped and already-named entries are kept as they were
        assert os.path.isfile(os.path.join(dst, "DEADBEEF"))
        assert _read(os.path.join(dst, "notes", "readme.md")) == b"hello\n"
        # .time carried over byte-for-byte
        assert _read(os.path.join(dst, ".time")) == struct.pack("<I", TIMESTAMP)

        assert session.mapping.mapped_count == 3
        assert [e.rel_path for e in session.not_found] == ["DEADBEEF"]
        assert session.timestamp == TIMESTAMP
        assert session.summary["hash_named"] == 4
        print(f"  Summary: {session.summary}")

        report_json = os.path.join(tmp, "report.json")
        manager.export_report_json(report_json)
        with open(report_json, encoding="utf-8") as f:
            report = json.load(f)
        assert report["summary"]["mapped"] == 3
        assert report["not_found"] == ["DEADBEEF"]
        assert report["mapped"][digest_to_name(afs_hash("scenelist.xml"))] == "scenelist.xml"

        report_csv = os.path.join(tmp, "report.csv")
        manager.export_report_csv(report_csv)
        with open(report_csv, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert rows[0] == ["Name", "Digest", "Status", "Path"]
        statuses = sorted(r[2] for r in rows[1:])
        assert statuses == ["mapped", "mapped", "mapped", "named", "not_found"]

        # A second run refuses to clobber the output
        try:
            manager.map_directory(src, dst)
        except FileExistsError:
            pass
        else:
            raise AssertionError("existing output folder overwritten")
        assert manager.map_directory(src, dst, overwrite=True).mapping.mapped_count == 3

        # Default output location
        session = manager.map_directory(src)
        assert session.output_dir == src + ".mapped"
        assert os.path.isfile(os.path.join(src + ".mapped", "scenelist.xml"))
        print("  ✅ map directory: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_map_without_harvest():
    print("── Test: map without harvesting ──")
    tmp = tempfile.mkdtemp()
    try:
        src = make_extracted_scene(tmp)
        dst = os.path.join(tmp, "out")
        session = RecoveryManager().map_directory(src, dst, harvest=False)
        texture700 = digest_to_name(afs_hash("textures/texture700.dds"))
        # texture700 is past the fast index range and only reachable by harvesting
        assert sorted(e.rel_path for e in session.not_found) == sorted(["DEADBEEF", texture700])
        assert os.path.isfile(os.path.join(dst, texture700))

        full = RecoveryManager().map_directory(src, os.path.join(tmp, "full"),
                                               mode="full", harvest=False)
        assert [e.rel_path for e in full.not_found] == ["DEADBEEF"]
        print("  ✅ map without harvesting: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_object_scope_needs_uuid():
    print("── Test: object scope needs a UUID ──")
    tmp = tempfile.mkdtemp()
    try:
        src = make_extracted_scene(tmp)
        dst = os.path.join(tmp, "out")
        try:
            RecoveryManager().map_directory(src, dst, scope="object")
        except MissingDisambiguatorError:
            pass
        else:
            raise AssertionError("object scope ran without a UUID")
        assert not os.path.exists(dst)
        print("  ✅ object scope needs a UUID: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_cli():
    print("── Test: command line ──")
    tmp = tempfile.mkdtemp()
    try:
        cfg = os.path.join(tmp, "search.json")
        with open(cfg, "w", encoding="utf-8") as f:
            json.dump({"search": {"iv_spaces": {t.name: {"low_stop": 1024} for t in TypeTag},
                                  "segment_count_max": 64}}, f)
        key = KEY.hex()

        enc = os.path.join(tmp, "object.enc")
        out = os.path.join(tmp, "object.xml")
        _write(enc, encrypt(XML, KEY, 5))
        assert cli_main(["--config", cfg, "crypt", "decrypt", "-i", enc, "-o", out, "-k", key]) == 0
        assert _read(out) == XML

        miss = os.path.join(tmp, "miss.bin")
        assert cli_main(["--config", cfg, "crypt", "decrypt", "-i", enc, "-o", miss,
                         "-k", key, "-t", "LuaScript"]) == 2
        assert not os.path.exists(miss)

        tiny = os.path.join(tmp, "tiny.enc")
        _write(tiny, encrypt(b"<?xm", KEY, 5))
        assert cli_main(["--config", cfg, "crypt", "decrypt", "-i", tiny, "-o", miss, "-k", key]) == 2
        assert not os.path.exists(miss)

        again = os.path.join(tmp, "again.enc")
        assert cli_main(["crypt", "encrypt", "-i", out, "-o", again, "-k", key,
                         "--iv", "0000000000000005"]) == 0
        assert _read(again) == _read(enc)
        assert cli_main(["crypt", "encrypt", "-i", out, "-o", again, "-k", key]) == 1
        assert cli_main(["crypt", "decrypt", "-i", enc, "-o", miss, "-k", "zz"]) == 1

        src = make_extracted_scene(tmp)
        mapped = os.path.join(tmp, "mapped")
        report = os.path.join(tmp, "map.json")
        assert cli_main(["map", "-i", src, "-o", mapped, "--report", report]) == 0
        assert os.path.isfile(os.path.join(mapped, "scenelist.xml"))
        assert os.path.isfile(report)
        assert cli_main(["map", "-i", src, "-o", mapped]) == 1
        assert cli_main(["map", "-i", src, "-o", os.path.join(tmp, "obj"),
                         "--scope", "object"]) == 1
        assert cli_main(["map", "-i", src, "-o", os.path.join(tmp, "scn"),
                         "--scope", "scene", "--uuid", "00000000-00000000-00000000-00000001"]) == 1
        print("  ✅ command line: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_config_rejects_bad_types():
    print("── Test: config type checks ──")
    for bad in ({"search": []},
                {"map": "fast"},
                {"search": {"workers": "many"}},
                {"search": {"iv_spaces": []}},
                {"search": {"iv_spaces": {"RawXML": {"low_stop": "x"}}}},
                {"search": {"iv_spaces": {"RawXML": {"high_words": 1}}}},
                {"map": {"harvest": "yes"}}):
        try:
            config_from_dict(bad)
        except ConfigurationError:
            continue
        raise AssertionError(f"accepted {bad}")

    tmp = tempfile.mkdtemp()
    try:
        cfg = os.path.join(tmp, "list.json")
        with open(cfg, "w", encoding="utf-8") as f:
            json.dump({"search": []}, f)
        enc = os.path.join(tmp, "object.enc")
        _write(enc, encrypt(XML, KEY, 5))
        assert cli_main(["--config", cfg, "crypt", "decrypt", "-i", enc,
                         "-o", os.path.join(tmp, "out.xml"), "-k", KEY.hex()]) == 1
        print("  ✅ config type checks: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_existing_output_checked_first():
    """An existing output fails the run before the input is even read."""
    print("── Test: existing output checked first ──")
    tmp = tempfile.mkdtemp()
    try:
        manager = RecoveryManager(small_search())
        dst = os.path.join(tmp, "taken.xml")
        _write(dst, b"KEEP")
        missing_src = os.path.join(tmp, "does-not-exist.enc")
        for call in (manager.decrypt_file, manager.auto_file):
            try:
                call(missing_src, dst, KEY)
            except FileExistsError:
                pass
            else:
                raise AssertionError(f"{call.__name__} did not refuse the output")
        assert _read(dst) == b"KEEP"
        print("  ✅ existing output checked first: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_map_keeps_clashing_entries():
    """A recovered path already used by a named file keeps its digest name."""
    print("── Test: map output clash ──")
    tmp = tempfile.mkdtemp()
    try:
        src = os.path.join(tmp, "scene")
        hashed_name = digest_to_name(afs_hash("scripts/main.lua"))
        _write(os.path.join(src, "scripts", "main.lua"), b"NAMED COPY")
        _write(os.path.join(src, hashed_name), b"HASHED COPY")

        dst = os.path.join(tmp, "out")
        manager = RecoveryManager()
        session = manager.map_directory(src, dst, harvest=False)

        assert session.mapping.path_for(afs_hash("scripts/main.lua")) == "scripts/main.lua"
        assert _read(os.path.join(dst, "scripts", "main.lua")) == b"NAMED COPY"
        assert _read(os.path.join(dst, hashed_name)) == b"HASHED COPY"
        assert [e.rel_path for e in session.conflicts] == [hashed_name]
        assert session.summary["conflicts"] == 1

        report_csv = os.path.join(tmp, "report.csv")
        manager.export_report_csv(report_csv)
        with open(report_csv, newline="", encoding="utf-8") as f:
            rows = {r[0]: r[2] for r in list(csv.reader(f))[1:]}
        assert rows == {"scripts/main.lua": "named", hashed_name: "conflict"}
        print("  ✅ map output clash: PASS")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def main():
    test_timestamp_codec()
    test_config_loading()
    test_decrypt_file()
    test_auto_file()
    test_collect_entries()
    test_map_directory()
    test_map_without_harvest()
    test_object_scope_needs_uuid()
    test_cli()
    test_config_rejects_bad_types()
    test_existing_output_checked_first()
    test_map_keeps_clashing_entries()


if __name__ == "__main__":
    main()
