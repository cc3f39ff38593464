import struct
import zlib

import pytest


WAD_HEADER_FORMAT = '<4sii'
WAD_ITEM_FORMAT = '<iiiBB2s16s'


def pack_wad(items, magic=b'WAD2', directory_last=False):
    """Build a WAD2 image from (name, type, data) tuples."""
    header_size = struct.calcsize(WAD_HEADER_FORMAT)
    directory_size = struct.calcsize(WAD_ITEM_FORMAT) * len(items)

    if directory_last:
        data_start = header_size
        directory_offset = header_size + sum(len(data) for _, _, data in items)
    else:
        data_start = header_size + directory_size
        directory_offset = header_size

    directory = bytearray()
    payload = bytearray()
    position = data_start
    for name, type_, data in items:
        directory += struct.pack(
            WAD_ITEM_FORMAT, position, len(data), len(data), type_, 0, b'\x00\x00',
            name.encode('latin-1'),
        )
        payload += data
        position += len(data)

    header = struct.pack(WAD_HEADER_FORMAT, magic, len(items), directory_offset)
    if directory_last:
        return header + bytes(payload) + bytes(directory)
    return header + bytes(directory) + bytes(payload)


def pack_tex(name, width, height, data):
    return name.encode('latin-1').ljust(16, b'\x00')[:16] + struct.pack('<ii', width, height) + data


@pytest.fixture
def wad_factory(tmp_path):
    def make(items, filename='test.wad', **kwargs):
        path = tmp_path / filename
        path.write_bytes(pack_wad(items, **kwargs))
        return path
    return make


@pytest.fixture
def tex_factory(tmp_path):
    def make(name='WALL', width=2, height=2, data=b'\x00\x01\x02\x01', filename='test.tex'):
        path = tmp_path / filename
        path.write_bytes(pack_tex(name, width, height, data))
        return path
    return make


@pytest.fixture
def palette_bytes():
    # red, green, blue
    return b'\xff\x00\x00' + b'\x00\xff\x00' + b'\x00\x00\xff'


@pytest.fixture
def palette_file(tmp_path, palette_bytes):
    path = tmp_path / 'palette.lmp'
    path.write_bytes(palette_bytes)
    return path


@pytest.fixture
def sample_items():
    return [
        ('conchars', 68, b'\x01\x02\x03\x04\x05'),
        ('palette', 64, bytes(range(9))),
        ('mystery', 200, b'\xaa\xbb'),
    ]


def png_chunk(kind, payload):
    body = kind + payload
    return struct.pack('>I', len(payload)) + body + struct.pack('>I', zlib.crc32(body))


@pytest.fixture
def oversized_png(tmp_path):
    """A PNG header claiming 20000x20000 pixels, with no image data."""
    path = tmp_path / 'huge.png'
    header = struct.pack('>IIBBBBB', 20000, 20000, 8, 3, 0, 0, 0)
    path.write_bytes(
        b'\x89PNG\r\n\x1a\n' + png_chunk(b'IHDR', header) + png_chunk(b'IEND', b'')
    )
    return path
