import pytest

from lima import iso9660util

SECTOR = 2048


def _descriptor(kind, ident=b"CD001", version=1):
    head = bytes([kind]) + ident + bytes([version])
    return head + b"\0" * (SECTOR - len(head))


def _image(tmp_path, *descriptors):
    path = tmp_path / "image.iso"
    path.write_bytes(b"\0" * (16 * SECTOR) + b"".join(descriptors))
    return path


def test_valid_image(tmp_path):
    path = _image(tmp_path, _descriptor(1), _descriptor(255))
    assert iso9660util.is_iso9660(path) is True


def test_supplementary_descriptor_is_skipped(tmp_path):
    path = _image(tmp_path, _descriptor(1), _descriptor(2), _descriptor(255))
    assert iso9660util.is_iso9660(path) is True


def test_missing_primary_descriptor(tmp_path):
    path = _image(tmp_path, _descriptor(255))
    assert iso9660util.is_iso9660(path) is False


def test_missing_terminator(tmp_path):
    path = _image(tmp_path, _descriptor(1))
    assert iso9660util.is_iso9660(path) is False


def test_wrong_identifier(tmp_path):
    path = _image(tmp_path, _descriptor(1, ident=b"XXXXX"), _descriptor(255))
    assert iso9660util.is_iso9660(path) is False


def test_short_file(tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(b"QFI\xfb" + b"\0" * 100)
    assert iso9660util.is_iso9660(path) is False


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        iso9660util.is_iso9660(tmp_path / "absent.iso")