import io

from ctxsync.hashing import hash_bytes, hash_file, hash_stream, is_identity, is_utf8_file


EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_identity_depends_on_content_only(tmp_path):
    a = tmp_path / "a.txt"
    b = tmp_path / "nested" / "b.py"
    b.parent.mkdir()
    a.write_bytes(b"same bytes")
    b.write_bytes(b"same bytes")

    assert hash_file(a) == hash_file(b) == hash_bytes(b"same bytes")


def test_empty_content_has_well_known_identity(tmp_path):
    empty = tmp_path / "empty"
    empty.write_bytes(b"")
    assert hash_file(empty) == EMPTY_SHA256
    assert hash_bytes(b"") == EMPTY_SHA256


def test_chunked_stream_matches_whole_digest():
    data = bytes(range(256)) * 1000
    seen = []
    digest = hash_stream(io.BytesIO(data), chunk_size=4096, on_chunk=seen.append)

    assert digest == hash_bytes(data)
    assert sum(seen) == len(data)
    assert max(seen) == 4096


def test_is_identity():
    assert is_identity(EMPTY_SHA256)
    assert not is_identity(EMPTY_SHA256.upper())
    assert not is_identity(EMPTY_SHA256[:-1])
    assert not is_identity("0x" + EMPTY_SHA256[2:])
    assert not is_identity("g" * 64)


def test_utf8_detection(tmp_path):
    text = tmp_path / "text.txt"
    text.write_text("héllo wörld", encoding="utf-8")
    binary = tmp_path / "image.bin"
    binary.write_bytes(b"\x89PNG\r\n\x1a\n\xff\xfe")

    assert is_utf8_file(text)
    assert not is_utf8_file(binary)


def test_utf8_sequence_split_across_chunks_is_text(tmp_path):
    path = tmp_path / "split.txt"
    path.write_bytes("ü".encode("utf-8") * 3)

    assert is_utf8_file(path, chunk_size=1)
