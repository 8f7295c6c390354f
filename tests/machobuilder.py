"""Builders for minimal synthetic Mach-O images used across the tests."""

import struct


MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
FAT_MAGIC = 0xCAFEBABE
CPU_TYPE_ARM64 = 0x0100000C
CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_I386 = 0x7
CPU_TYPE_POWERPC = 0x12
CPU_TYPE_POWERPC64 = 0x01000012

MH_EXECUTE = 0x2
MH_DYLIB = 0x6
MH_BUNDLE = 0x8
MH_DSYM = 0xA

LC_SEGMENT = 0x1
LC_SEGMENT_64 = 0x19
LC_LOAD_DYLIB = 0xC
LC_ID_DYLIB = 0xD
LC_RPATH = 0x8000001C

SEGMENT_SIZE = 56
SEGMENT_64_SIZE = 72
HEADER_SIZE = 28
HEADER_64_SIZE = 32

LITTLE_ENDIAN = "<"
BIG_ENDIAN = ">"


def _nul_padded(text: str) -> bytes:
    """NUL-terminate and pad to 8 bytes, the way macholib writes strings."""
    data = text.encode()
    return data + b"\x00" * (8 - len(data) % 8)


def _dylib_command(cmd: int, name: str, byteorder: str) -> bytes:
    payload = _nul_padded(name)
    return (
        struct.pack(byteorder + "IIIIII", cmd, 24 + len(payload), 24, 2, 0x10000, 0x10000)
        + payload
    )


def _rpath_command(path: str, byteorder: str) -> bytes:
    payload = path.encode() + b"\x00"
    payload += b"\x00" * (-(12 + len(payload)) % 8)
    return struct.pack(byteorder + "III", LC_RPATH, 12 + len(payload), 12) + payload


def _segment_command(bits: int, byteorder: str, fileoff: int) -> bytes:
    if bits == 64:
        return struct.pack(
            byteorder + "II16sQQQQiiII",
            LC_SEGMENT_64,
            SEGMENT_64_SIZE,
            b"__DATA",
            0x100000000,
            0x1000,
            fileoff,
            16,
            3,
            3,
            0,
            0,
        )
    return struct.pack(
        byteorder + "II16sIIIIiiII",
        LC_SEGMENT,
        SEGMENT_SIZE,
        b"__DATA",
        0x1000,
        0x1000,
        fileoff,
        16,
        3,
        3,
        0,
        0,
    )


def build_macho(
    filetype: int = MH_DYLIB,
    loads: tuple[str, ...] | list[str] = (),
    install_name: str | None = None,
    rpaths: tuple[str, ...] | list[str] = (),
    spare: int = 512,
    cputype: int = CPU_TYPE_ARM64,
    bits: int = 64,
    byteorder: str = LITTLE_ENDIAN,
) -> bytes:
    """Build a minimal thin Mach-O image.

    bits selects the 32-bit (``mach_header``, ``LC_SEGMENT``) or 64-bit
    layout and byteorder is a struct prefix, ``"<"`` or ``">"``. The only
    segment has no sections and starts `spare` bytes after the load
    commands, which is the room available for growing them.
    """
    if bits not in (32, 64):
        raise ValueError(f"bits must be 32 or 64, got {bits}")
    commands = []
    if install_name is not None:
        commands.append(_dylib_command(LC_ID_DYLIB, install_name, byteorder))
    commands.extend(_dylib_command(LC_LOAD_DYLIB, name, byteorder) for name in loads)
    commands.extend(_rpath_command(rpath, byteorder) for rpath in rpaths)

    header_size = HEADER_64_SIZE if bits == 64 else HEADER_SIZE
    segment_size = SEGMENT_64_SIZE if bits == 64 else SEGMENT_SIZE
    sizeofcmds = segment_size + sum(len(c) for c in commands)
    fileoff = header_size + sizeofcmds + spare
    fileoff += -fileoff % 8

    fields = [
        MH_MAGIC_64 if bits == 64 else MH_MAGIC,
        cputype,
        0,
        filetype,
        len(commands) + 1,
        sizeofcmds,
        0,
    ]
    header_format = "IiiIIII"
    if bits == 64:
        fields.append(0)
        header_format += "I"
    header = struct.pack(byteorder + header_format, *fields)
    segment = _segment_command(bits, byteorder, fileoff)
    image = header + segment + b"".join(commands)
    return image + b"\x00" * (fileoff - len(image)) + b"\xab" * 16


def _slice_cputype(image: bytes) -> int:
    byteorder = BIG_ENDIAN if image[:3] == b"\xfe\xed\xfa" else LITTLE_ENDIAN
    (cputype,) = struct.unpack_from(byteorder + "i", image, 4)
    return cputype


def build_fat(*slices: bytes) -> bytes:
    """Wrap thin images into a universal binary, one slice per 4K page."""
    offset = 0x1000
    arch_table = b""
    body = b""
    for image in slices:
        arch_table += struct.pack(
            ">iiIII", _slice_cputype(image), 0, offset + len(body), len(image), 12
        )
        body += image + b"\x00" * (-len(image) % 0x1000)
    head = struct.pack(">II", FAT_MAGIC, len(slices)) + arch_table
    return head + b"\x00" * (offset - len(head)) + body
