#!/usr/bin/env python3
"""
WAD2 / TEX Asset Tool

A CLI tool for working with the legacy assets of WAD2-based game engines:
- Inspect, list and extract the items of WAD2 archives
- Inspect TEX textures
- Convert TEX textures to indexed images (PNG, BMP, ...) using a palette
- Convert indexed images back to TEX pixel data

Usage:
    wadtex.py wad info <archive.wad>
    wadtex.py wad list <archive.wad>
    wadtex.py wad extract <archive.wad> <output_dir>
    wadtex.py tex info <texture.tex>
    wadtex.py tex decode <texture.tex> <palette.lmp> <image.png>
    wadtex.py tex encode <image.png> <palette.lmp> <texture.tex>

See 'wadtex.py <group> <command> --help' for more information.
"""

import argparse
import io
import logging
import struct
import sys
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import IntEnum
from itertools import repeat
from pathlib import Path
from typing import BinaryIO, Optional

from PIL import Image


logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class WadTexError(Exception):
    """Base class for every failure reported by this tool."""


class FormatError(WadTexError, ValueError):
    """A header, directory entry or palette does not hold valid values."""


class TruncatedFileError(WadTexError, EOFError):
    """A fixed-size read hit the end of the file."""


class CodecError(WadTexError, ValueError):
    """The indexed image codec could not encode or decode the data."""


# =============================================================================
# Binary I/O Utilities
# =============================================================================

def read_exact(f: BinaryIO, size: int, what: str = 'data') -> bytes:
    """Read exactly `size` bytes, failing on a short read."""
    if size < 0:
        raise FormatError(f"Invalid size for {what}: {size}")
    data = f.read(size)
    if len(data) < size:
        raise TruncatedFileError(
            f"Unexpected end of file while reading {what}: "
            f"expected {size} bytes, got {len(data)}"
        )
    return data


def read_int32(f: BinaryIO, what: str = 'integer') -> int:
    return struct.unpack('<i', read_exact(f, 4, what))[0]


def cstring(raw: bytes) -> str:
    """Decode a fixed-width, NUL-terminated name field."""
    return raw.split(b'\x00', 1)[0].decode('latin-1')


def read_cstring(f: BinaryIO, width: int, what: str = 'string') -> str:
    return cstring(read_exact(f, width, what))


def write_all(f: BinaryIO, data: bytes, path) -> int:
    written = f.write(data)
    if written != len(data):
        raise OSError(f"Short write to '{path}': {written} of {len(data)} bytes")
    return written


def file_disk_size(path) -> int:
    return Path(path).stat().st_size


def create_parent_dir(path) -> Path:
    """Create the directory holding `path` if it does not exist yet."""
    parent = Path(path).parent
    logger.debug("creating top level directory for path '%s'", path)
    parent.mkdir(parents=True, exist_ok=True)
    return parent


# =============================================================================
# Data Model
# =============================================================================

class WadItemType(IntEnum):
    """Type tags stored in the WAD2 item directory."""
    NONE = 0
    LABEL = 1
    LUMPY = 64
    PALETTE = 64  # shares its value with LUMPY, the first of the "lumpy" tags
    QTEX = 65
    QPIC = 66
    SOUND = 67
    MIPTEX = 68

    @classmethod
    def from_byte(cls, value: int) -> Optional['WadItemType']:
        """Return the matching tag, or None for bytes outside the enumeration."""
        try:
            return cls(value)
        except ValueError:
            return None


ITEM_TYPE_NAMES = {
    WadItemType.NONE: 'None',
    WadItemType.LABEL: 'Label',
    WadItemType.LUMPY: 'Lumpy',
    WadItemType.QTEX: 'QTex',
    WadItemType.QPIC: 'QPic',
    WadItemType.SOUND: 'Sound',
    WadItemType.MIPTEX: 'MipTex',
}


def item_type_name(type_byte: int) -> str:
    """Display name of a directory type byte; unrecognised bytes are 'Unknown'."""
    kind = WadItemType.from_byte(type_byte)
    if kind is None:
        return 'Unknown'
    return ITEM_TYPE_NAMES[kind]


@dataclass(frozen=True)
class WadHeader:
    code: bytes
    items_count: int
    offset: int


@dataclass(frozen=True)
class WadItemHeader:
    """One record of the WAD2 item directory."""
    position: int
    size: int
    compressed_size: int
    type: int
    compression_type: int
    paddings: bytes
    name: str

    @property
    def kind(self) -> Optional[WadItemType]:
        return WadItemType.from_byte(self.type)

    @property
    def type_name(self) -> str:
        return item_type_name(self.type)


@dataclass(frozen=True)
class RGBColor:
    red: int
    green: int
    blue: int

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.red, self.green, self.blue)


@dataclass
class TexHeader:
    """A TEX texture: name, dimensions and one palette index per pixel."""
    name: str
    width: int
    height: int
    data: Optional[bytes]


# =============================================================================
# Palette Loader
# =============================================================================

PALETTE_COLOR_SIZE = 3


def palette_file_size(f: BinaryIO) -> int:
    """Size of an open palette file; leaves the position at the start."""
    logger.debug("calculating palette size")
    size = f.seek(0, io.SEEK_END)
    f.seek(0)
    return size


def verify_palette(path, size: int):
    logger.debug("verifying palette file '%s'", path)
    if size <= 0:
        raise FormatError(f"The palette '{path}' file is not valid (it is empty)")


def load_palette_data(f: BinaryIO, size: int) -> list[RGBColor]:
    """
    Read `size // 3` RGB triplets in file order.

    Trailing bytes that do not form a whole colour are left unread.
    """
    logger.debug("loading palette color data")
    colors = []
    for index in range(size // PALETTE_COLOR_SIZE):
        red, green, blue = read_exact(f, PALETTE_COLOR_SIZE, f"palette color #{index}")
        colors.append(RGBColor(red, green, blue))
    return colors


def load_palette(path) -> list[RGBColor]:
    logger.debug("opening the palette file from '%s'", path)
    with open(path, 'rb') as f:
        size = palette_file_size(f)
        verify_palette(path, size)
        return load_palette_data(f, size)


def palette_bytes(palette: list[RGBColor]) -> bytes:
    return b''.join(bytes(color.as_tuple()) for color in palette)


# =============================================================================
# Indexed Image Codec (Pillow)
# =============================================================================

MAX_PALETTE_COLORS = 256


def image_format_for(path) -> str:
    """Pillow format name for an output path, PNG when the extension is unknown."""
    return Image.registered_extensions().get(Path(path).suffix.lower(), 'PNG')


def encode_indexed(pixels: bytes, palette: list[RGBColor], width: int, height: int,
                   fmt: str = 'PNG') -> bytes:
    """
    Encode palette indices as a paletted image.

    Args:
        pixels: One palette index per pixel, row by row
        palette: Colour table, entry i is the colour of index i
        width: Image width in pixels
        height: Image height in pixels
        fmt: Pillow format name of the encoded stream

    Returns:
        The encoded image bytes
    """
    if width <= 0 or height <= 0:
        raise CodecError(f"Invalid image dimensions {width}x{height}")
    if not palette:
        raise CodecError("Palette is empty")

    count = width * height
    if len(pixels) < count:
        raise CodecError(f"Not enough pixel data: expected {count} bytes, got {len(pixels)}")
    indices = bytes(pixels[:count])

    colors = palette[:MAX_PALETTE_COLORS]
    highest = max(indices)
    if highest >= len(colors):
        raise CodecError(f"Pixel index {highest} is outside the palette ({len(colors)} colors)")

    img = Image.frombytes('P', (width, height), indices)
    img.putpalette(palette_bytes(colors), rawmode='RGB')

    buffer = io.BytesIO()
    try:
        img.save(buffer, format=fmt)
    except (OSError, ValueError, KeyError, Image.DecompressionBombError) as e:
        raise CodecError(f"Cannot write a paletted image as {fmt}: {e}") from e
    return buffer.getvalue()


def _palette_matches(img: Image.Image, palette: list[RGBColor]) -> bool:
    """True when every index used by a mode P image maps to the same colour in `palette`."""
    source = img.getpalette() or []
    for index in set(img.tobytes()):
        if index >= len(palette):
            return False
        if tuple(source[index * 3:index * 3 + 3]) != palette[index].as_tuple():
            return False
    return True


def decode_indexed(data: bytes, palette: list[RGBColor]) -> tuple[bytes, int, int]:
    """
    Decode an image into palette indices.

    Paletted images drawn with the same palette keep their indices. Anything
    else is matched colour by colour; the first palette entry of a colour wins.

    Returns:
        (pixels, width, height)
    """
    if not palette:
        raise CodecError("Palette is empty")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            width, height = img.size
            if img.mode == 'P' and _palette_matches(img, palette):
                return img.tobytes(), width, height
            rgb = img.convert('RGB').tobytes()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise CodecError(f"Cannot decode image data: {e}") from e

    lookup: dict[bytes, int] = {}
    for index, color in enumerate(palette[:MAX_PALETTE_COLORS]):
        lookup.setdefault(bytes(color.as_tuple()), index)

    pixels = bytearray()
    for pos in range(0, len(rgb), 3):
        key = rgb[pos:pos + 3]
        index = lookup.get(key)
        if index is None:
            raise CodecError(f"Color {tuple(key)} at pixel {pos // 3} is not in the palette")
        pixels.append(index)
    return bytes(pixels), width, height


# =============================================================================
# TEX Textures
# =============================================================================

TEX_NAME_SIZE = 16


def load_tex_header(f: BinaryIO) -> TexHeader:
    """
    Parse a TEX file from its current position.

    Everything after the dimensions is the pixel payload; its length is not
    compared with width * height.
    """
    logger.debug("loading .TEX file header")
    name = read_cstring(f, TEX_NAME_SIZE, '.TEX name')
    width = read_int32(f, '.TEX width')
    height = read_int32(f, '.TEX height')
    return TexHeader(name=name, width=width, height=height, data=f.read())


def verify_tex_header(header: TexHeader, path):
    logger.debug("verifying .TEX file header")

    issues = []
    if not header.name:
        issues.append("missing name")
    if header.width <= 0:
        issues.append(f"width={header.width}")
    if header.height <= 0:
        issues.append(f"height={header.height}")
    if header.data is None:
        issues.append("no pixel data")
    if issues:
        raise FormatError(f"The '{path}' file is not valid ({', '.join(issues)})")


def load_tex(path) -> TexHeader:
    logger.debug("opening the .TEX file from '%s'", path)
    with open(path, 'rb') as f:
        header = load_tex_header(f)
    verify_tex_header(header, path)
    return header


def save_tex(header: TexHeader, path):
    """Write width, height and the raw pixel payload, in that order."""
    logger.debug("saving .TEX data into '%s'", path)
    with open(path, 'wb') as f:
        write_all(f, struct.pack('<ii', header.width, header.height), path)
        write_all(f, header.data, path)


def tex_to_image(header: TexHeader, palette: list[RGBColor], tex_path, palette_path,
                 fmt: str = 'PNG') -> bytes:
    logger.debug("converting tex image to indexed image")
    try:
        return encode_indexed(header.data, palette, header.width, header.height, fmt)
    except CodecError as e:
        raise CodecError(f"Failed to convert '{tex_path}' using '{palette_path}': {e}") from e


def image_to_tex(data: bytes, palette: list[RGBColor], image_path, name: str) -> TexHeader:
    """Decode an image into a TexHeader named `name`."""
    logger.debug("converting indexed image to tex")
    try:
        pixels, width, height = decode_indexed(data, palette)
    except CodecError as e:
        raise CodecError(f"Failed to convert '{image_path}' to tex data: {e}") from e
    return TexHeader(name=name, width=width, height=height, data=pixels)


def default_tex_name(path) -> str:
    return Path(path).stem.upper()[:TEX_NAME_SIZE - 1]


def print_tex_info(path, header: TexHeader):
    print("--- Information ------------------------------------------")
    print(f"  ◉ Path:               {path}")
    print(f"  ◉ Name:               {header.name}")
    print(f"  ◉ Width:              {header.width} pixels")
    print(f"  ◉ Height:             {header.height} pixels")
    print(f"  ◉ Image Data size:    {len(header.data)} bytes")
    print(f"  ◉ Image Size on disk: {file_disk_size(path)} bytes")


# =============================================================================
# WAD2 Archives
# =============================================================================

class WadReader:
    """Reader for the WAD2 header and item directory."""

    MAGIC = b'WAD2'
    HEADER_FORMAT = '<4sii'
    HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
    ITEM_FORMAT = '<iiiBB2s16s'
    ITEM_SIZE = struct.calcsize(ITEM_FORMAT)

    def __init__(self, f: BinaryIO):
        self.f = f

    def load_header(self) -> WadHeader:
        logger.debug("loading .WAD file header")
        raw = read_exact(self.f, self.HEADER_SIZE, '.WAD header')
        return WadHeader(*struct.unpack(self.HEADER_FORMAT, raw))

    @classmethod
    def verify_header(cls, header: WadHeader):
        logger.debug("verifying .WAD file header")

        if header.code != cls.MAGIC:
            raise FormatError(f"Invalid .WAD magic: expected {cls.MAGIC!r}, got {header.code!r}")
        if header.items_count <= 0 or header.offset <= 0:
            raise FormatError(
                f".WAD file header is not valid "
                f"(items={header.items_count}, offset={header.offset})"
            )

    def load_items_header(self, header: WadHeader) -> list[WadItemHeader]:
        """Read `header.items_count` directory records starting at `header.offset`."""
        logger.debug("seeking to the .WAD items header")
        self.f.seek(header.offset)

        logger.debug("loading .WAD items header")
        items = []
        for index in range(header.items_count):
            raw = read_exact(self.f, self.ITEM_SIZE, f".WAD directory entry #{index + 1}")
            position, size, compressed_size, type_, compression, paddings, name = (
                struct.unpack(self.ITEM_FORMAT, raw)
            )
            items.append(WadItemHeader(
                position=position, size=size, compressed_size=compressed_size,
                type=type_, compression_type=compression, paddings=paddings,
                name=cstring(name),
            ))
        return items

    def load(self) -> tuple[WadHeader, list[WadItemHeader]]:
        header = self.load_header()
        self.verify_header(header)
        return header, self.load_items_header(header)


def item_output_path(out_dir, name: str) -> tuple[Path, Path]:
    """
    Map an item name onto the extraction directory.

    Names that are empty, absolute or contain '..' are refused so that no
    item is written outside `out_dir`.

    Returns:
        (file path, parent directory)
    """
    rel = name.replace('\\', '/')
    parts = [part for part in rel.split('/') if part not in ('', '.')]
    if not parts or '..' in parts or rel.startswith('/'):
        raise FormatError(f"Cannot extract item with name {name!r}")
    path = Path(out_dir).joinpath(*parts)
    return path, path.parent


class WadExtractor:
    """Writes the payload of every directory item to its own file."""

    def __init__(self, wad_file: BinaryIO, items: list[WadItemHeader], verbose: bool = True):
        self.wad_file = wad_file
        self.items = items
        self.verbose = verbose
        self._lock = threading.Lock()

    def read_item_data(self, item: WadItemHeader) -> bytes:
        if item.position < 0:
            raise FormatError(f"Invalid position {item.position} for item '{item.name}'")
        with self._lock:
            self.wad_file.seek(item.position)
            return read_exact(self.wad_file, item.size, f".WAD item '{item.name}'")

    def extract_item(self, progress: int, item: WadItemHeader, out_dir) -> Path:
        if self.verbose:
            print(f"{progress}/{len(self.items)} extracting '{item.name}'")

        path, parent = item_output_path(out_dir, item.name)
        parent.mkdir(parents=True, exist_ok=True)
        data = self.read_item_data(item)
        with open(path, 'wb') as f:
            write_all(f, data, path)
        return path

    def extract_all(self, out_dir, jobs: int = 1) -> list[Path]:
        """
        Extract every item in directory order.

        With jobs > 1 items are written by a thread pool; reads from the shared
        archive handle are serialised. Files written before a failure stay on disk.
        """
        logger.debug("extracting items from .WAD file")
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)

        numbers = range(1, len(self.items) + 1)
        if jobs <= 1:
            return [self.extract_item(n, item, out_dir) for n, item in zip(numbers, self.items)]
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            return list(pool.map(self.extract_item, numbers, self.items, repeat(out_dir)))


@dataclass
class WadSummary:
    path: Path
    items_count: int
    disk_size: int
    type_counts: dict[int, int]


def summarize_wad(path, header: WadHeader, items: list[WadItemHeader]) -> WadSummary:
    """Count items per type byte, in first-seen order."""
    return WadSummary(
        path=Path(path),
        items_count=header.items_count,
        disk_size=file_disk_size(path),
        type_counts=dict(Counter(item.type for item in items)),
    )


def print_wad_info(summary: WadSummary):
    print("--- Information ------------------------------------------")
    print(f"  ◉ Path:            {summary.path}")
    print(f"  ◉ Number of items: {summary.items_count}")
    print(f"  ◉ Size on disk:    {summary.disk_size} bytes")
    print("--- Items count per category -----------------------------")
    for type_byte, count in summary.type_counts.items():
        print(f"  ◉ {item_type_name(type_byte):>8}: {count}")


def load_wad(path) -> tuple[WadHeader, list[WadItemHeader]]:
    logger.debug("opening the .WAD file from '%s'", path)
    with open(path, 'rb') as f:
        return WadReader(f).load()


# =============================================================================
# CLI Commands
# =============================================================================

def cmd_tex_info(args):
    """Show the header of a TEX texture."""
    header = load_tex(args.texture)
    print_tex_info(args.texture, header)
    return 0


def cmd_tex_decode(args):
    """Convert a TEX texture to an indexed image."""
    header = load_tex(args.texture)
    palette = load_palette(args.palette)
    fmt = image_format_for(args.image)
    image_data = tex_to_image(header, palette, args.texture, args.palette, fmt)

    create_parent_dir(args.image)
    with open(args.image, 'wb') as f:
        write_all(f, image_data, args.image)

    if not args.quiet:
        print(f"Saved {header.width}x{header.height} {fmt} image to {args.image}")
    return 0


def cmd_tex_encode(args):
    """Convert an indexed image to TEX pixel data."""
    palette = load_palette(args.palette)
    image_data = Path(args.image).read_bytes()

    name = args.name or default_tex_name(args.texture)
    header = image_to_tex(image_data, palette, args.image, name)
    verify_tex_header(header, args.texture)

    create_parent_dir(args.texture)
    save_tex(header, args.texture)

    if not args.quiet:
        print(f"Saved {header.width}x{header.height} texture to {args.texture}")
    return 0


def cmd_wad_info(args):
    """Show the header and item statistics of a WAD archive."""
    header, items = load_wad(args.archive)
    print_wad_info(summarize_wad(args.archive, header, items))
    return 0


def cmd_wad_list(args):
    """List item names in a WAD archive."""
    _, items = load_wad(args.archive)
    for item in items:
        print(item.name)
    return 0


def cmd_wad_extract(args):
    """Extract every item of a WAD archive."""
    with open(args.archive, 'rb') as f:
        _, items = WadReader(f).load()
        extractor = WadExtractor(f, items, verbose=not args.quiet)
        paths = extractor.extract_all(args.output, jobs=args.jobs)

    if not args.quiet:
        print(f"Extracted {len(paths)} items to {args.output}")
    return 0


def cmd_wad_create(args):
    """Create a WAD archive from a directory (not supported)."""
    print("Error: 'wad create' is intentionally not implemented.", file=sys.stderr)
    print("  WAD items come in several typed layouts (palettes, pictures, mip textures,",
          file=sys.stderr)
    print("  sounds, ...) and packing them requires knowing each of them.", file=sys.stderr)
    return 1


# =============================================================================
# Main Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wadtex.py',
        description='WAD2 archive and TEX texture tool',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Show archive statistics
  %(prog)s wad info gfx.wad

  # Extract an archive
  %(prog)s wad extract gfx.wad ./extracted

  # Convert a texture to PNG using the game palette
  %(prog)s tex decode wall.tex palette.lmp wall.png

  # Convert it back
  %(prog)s tex encode wall.png palette.lmp wall.tex
        '''
    )

    parser.add_argument('--debug', action='store_true', help='Show debug output')
    parser.add_argument('-q', '--quiet', action='store_true', help='Suppress verbose output')

    groups = parser.add_subparsers(dest='group', required=True)

    # TEX commands
    tex_parser = groups.add_parser('tex', help='Work with TEX textures')
    tex_commands = tex_parser.add_subparsers(dest='command', required=True)

    tex_info = tex_commands.add_parser('info', help='Show TEX header information')
    tex_info.add_argument('texture', help='Path to TEX file')
    tex_info.set_defaults(func=cmd_tex_info)

    tex_decode = tex_commands.add_parser('decode', help='Convert a TEX file to an image')
    tex_decode.add_argument('texture', help='Path to TEX file')
    tex_decode.add_argument('palette', help='Path to palette file (RGB triplets)')
    tex_decode.add_argument('image', help='Output image path (format from extension)')
    tex_decode.set_defaults(func=cmd_tex_decode)

    tex_encode = tex_commands.add_parser('encode', help='Convert an image to a TEX file')
    tex_encode.add_argument('image', help='Input image path')
    tex_encode.add_argument('palette', help='Path to palette file (RGB triplets)')
    tex_encode.add_argument('texture', help='Output TEX path')
    tex_encode.add_argument('--name', help='Texture name (default: output file name)')
    tex_encode.set_defaults(func=cmd_tex_encode)

    # WAD commands
    wad_parser = groups.add_parser('wad', help='Work with WAD2 archives')
    wad_commands = wad_parser.add_subparsers(dest='command', required=True)

    wad_info = wad_commands.add_parser('info', help='Show WAD archive information')
    wad_info.add_argument('archive', help='Path to WAD archive')
    wad_info.set_defaults(func=cmd_wad_info)

    wad_list = wad_commands.add_parser('list', help='List items in a WAD archive')
    wad_list.add_argument('archive', help='Path to WAD archive')
    wad_list.set_defaults(func=cmd_wad_list)

    wad_extract = wad_commands.add_parser('extract', help='Extract items from a WAD archive')
    wad_extract.add_argument('archive', help='Path to WAD archive')
    wad_extract.add_argument('output', help='Output directory')
    wad_extract.add_argument('-j', '--jobs', type=int, default=1,
                             help='Number of extraction threads (default: 1)')
    wad_extract.set_defaults(func=cmd_wad_extract)

    wad_create = wad_commands.add_parser('create', help='Create a WAD archive (not supported)')
    wad_create.add_argument('directory', help='Input directory')
    wad_create.add_argument('archive', help='Output WAD archive')
    wad_create.set_defaults(func=cmd_wad_create)

    return parser


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format='%(message)s',
    )

    try:
        status = args.func(args)
    except (WadTexError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        status = 1
    sys.exit(status)


if __name__ == '__main__':
    main()
