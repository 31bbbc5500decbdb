"""
Locating the CBOR auxdata blocks inside compiled bytecode.

The compiler reports the literal auxdata values in its legacy assembly
listing, but searching for those strings in a bytecode is unsafe: a contract
can embed the same bytes in its code and get a region of the on-chain
bytecode wrongly skipped during matching. Instead the sources are recompiled
with a whitespace edit, which only changes the metadata hash. The bytecode
positions that differ between the two compilations are the positions of the
metadata hashes, and from there the enclosing auxdata block is recovered by
checking the reported literal at exactly that place.

Positions are character indexes into the "0x"-prefixed hex strings; the
resulting offsets are bytes from the start of the bytecode.
"""

from collections import namedtuple

from .bytecode import AuxdataStyle, VYPER_LT_0_3_5_AUXDATA_LENGTH, byte_length, split_auxdata

AuxdataPosition = namedtuple("AuxdataPosition", ["offset", "value"])
AuxdataDiff = namedtuple("AuxdataDiff", ["real", "diff_start", "diff_end"])


def _collect_auxdatas(branch, auxdatas):
    if not isinstance(branch, dict):
        return
    numbered = []
    for key, value in branch.items():
        if key == ".auxdata":
            auxdatas.append(value)
        elif key == ".data":
            _collect_auxdatas(value, auxdatas)
        elif key.isdigit():
            numbered.append((int(key), value))
    # sub-assemblies are visited in numeric order
    for _, value in sorted(numbered, key=lambda item: item[0]):
        _collect_auxdatas(value, auxdatas)


def find_auxdatas_in_legacy_assembly(legacy_assembly):
    """Every `.auxdata` literal of a solc legacyAssembly listing, in listing order."""
    auxdatas = []
    _collect_auxdatas(legacy_assembly, auxdatas)
    return auxdatas


def get_diff_positions(original, modified):
    """All indexes where the two strings differ, e.g. ("Abcad", "Axyaz") -> [1, 2, 4]."""
    return [i for i, (a, b) in enumerate(zip(original, modified)) if a != b]


def get_compiler_auxdata_diffs(auxdatas, edited_auxdatas):
    if len(auxdatas) != len(edited_auxdatas):
        raise ValueError(
            f"Edited compilation reported {len(edited_auxdatas)} auxdatas instead of {len(auxdatas)}"
        )
    diffs = []
    for real, edited in zip(auxdatas, edited_auxdatas):
        positions = get_diff_positions(real, edited)
        if not positions:
            raise ValueError(f"Auxdata {real} did not change after editing the sources")
        diffs.append(AuxdataDiff(real, positions[0], positions[-1]))
    return diffs


def coalesce_diff_runs(positions):
    """Group sorted positions into (start, end) runs of adjacent indexes."""
    runs = []
    for position in positions:
        if runs and position == runs[-1][1] + 1:
            runs[-1] = (runs[-1][0], position)
        else:
            runs.append((position, position))
    return runs


def bytecode_includes_auxdata_diff_at(bytecode, auxdata_diff, position):
    start = position - auxdata_diff.diff_start
    if start < 0:
        return False
    return bytecode[start:start + len(auxdata_diff.real)] == auxdata_diff.real


def find_auxdata_positions(original_bytecode, edited_bytecode, auxdatas, edited_auxdatas):
    """
    Map each reported auxdata (keys "1", "2", ... in listing order) to its
    offset in `original_bytecode`.

    Example of one auxdata diff, where the first 20 characters are the
    stable part of the envelope and the metadata hash starts at diff_start:

        original: a2646970667358221220123af2412fd4b1b8...64736f6c63430007000033
        edited:   a2646970667358221220dceca8706b29e917...64736f6c63430007000033
                  |------------------|
                       diff_start
    """
    auxdata_diffs = get_compiler_auxdata_diffs(
        [a.lower() for a in auxdatas], [a.lower() for a in edited_auxdatas]
    )
    original_bytecode = original_bytecode.lower()
    runs = coalesce_diff_runs(get_diff_positions(original_bytecode, edited_bytecode.lower()))

    positions = {}
    for run_start, _ in runs:
        for index, auxdata_diff in enumerate(auxdata_diffs):
            key = str(index + 1)
            if key in positions:
                continue
            if bytecode_includes_auxdata_diff_at(original_bytecode, auxdata_diff, run_start):
                positions[key] = AuxdataPosition(
                    (run_start - auxdata_diff.diff_start - 2) // 2,
                    "0x" + auxdata_diff.real,
                )
                # identical auxdatas: the first free one takes this run
                break
    return positions


def locate_tail_auxdata(bytecode, style):
    """Position of the auxdata trailer at the end of `bytecode`, or None."""
    _, auxdata, length_hex = split_auxdata(bytecode, style)
    if auxdata is None:
        return None

    total = byte_length(bytecode)
    if style == AuxdataStyle.VYPER_LT_0_3_5:
        offset = total - VYPER_LT_0_3_5_AUXDATA_LENGTH
    elif style == AuxdataStyle.VYPER:
        offset = total - int(length_hex, 16)
    else:
        offset = total - int(length_hex, 16) - 2
    return AuxdataPosition(offset, "0x" + auxdata + length_hex)
