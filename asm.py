"""
CHIP-8 Assembler
=================
Translates Cowgod-style assembly text into big-endian CHIP-8 opcodes.

Supports:
  - Labels (terminated with ':')
  - All 35 instructions (CLS, RET, SYS, JP, CALL, SE, SNE, LD, ADD, OR,
    AND, XOR, SUB, SHR, SUBN, SHL, RND, DRW, SKP, SKNP)
  - Immediate literals (decimal, hex with 0x or # prefix, binary 0b)
  - Comments (';' to end of line)
  - .org, .db, .dw directives (.dw is big-endian)

Usage:
  from asm import assemble
  rom = assemble(source_text)          # base address 0x200
"""

from __future__ import annotations

from chip8 import LOAD_ADDR

# ---------------------------------------------------------------------------
#  Opcode templates
# ---------------------------------------------------------------------------

# 8xy_ ALU ops taking two registers
ALU_SUB = {
    "or": 0x1, "and": 0x2, "xor": 0x3, "sub": 0x5, "subn": 0x7,
}

# Fx__ ops written as "LD <special>, Vx"
LD_SPECIAL_DST = {
    "dt": 0x15, "st": 0x18, "f": 0x29, "b": 0x33, "[i]": 0x55,
}

# Fx__ ops written as "LD Vx, <special>"
LD_SPECIAL_SRC = {
    "dt": 0x07, "k": 0x0A, "[i]": 0x65,
}


# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def _is_reg(tok: str) -> bool:
    tok = tok.strip().lower()
    return (len(tok) == 2 and tok[0] == "v"
            and tok[1] in "0123456789abcdef")


def _parse_reg(tok: str) -> int:
    """Parse 'V0'-'VF' (case-insensitive). Returns register index."""
    if not _is_reg(tok):
        raise ValueError(f"Invalid register: {tok!r}")
    return int(tok.strip()[1], 16)


def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal, 0x/# hex, 0b binary)."""
    tok = tok.strip()
    if tok.startswith("#"):
        return int(tok[1:], 16)
    return int(tok, 0)


def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]


def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' -> (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def _strip_comment(raw: str) -> str:
    idx = raw.find(";")
    if idx >= 0:
        raw = raw[:idx]
    return raw.strip()


# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble(source: str, base_addr: int = LOAD_ADDR,
             listing: bool = False) -> bytearray:
    """
    Two-pass assembler.
    Pass 1: collect labels and compute sizes.
    Pass 2: emit opcodes with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = _strip_comment(raw)
        if not stripped:
            continue
        # "label: instr" on one line
        if ":" in stripped and not stripped.endswith(":"):
            lbl, rest = stripped.split(":", 1)
            if lbl.strip() and " " not in lbl.strip():
                cleaned.append((i, lbl.strip() + ":"))
                stripped = rest.strip()
        cleaned.append((i, stripped))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []
    pc = base_addr

    for lineno, text in cleaned:
        if text.endswith(":"):
            lbl = text[:-1].strip()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            continue

        lower = text.lower()
        if lower.startswith(".org"):
            target = _imm(lineno, text[4:])
            if target < pc:
                raise AsmError(lineno, f".org {target:#x} moves backwards")
            pc = target
            sizes.append((lineno, text, 0))
            continue
        if lower.startswith(".db"):
            n = len(_split_ops(text[3:]))
            pc += n
            sizes.append((lineno, text, n))
            continue
        if lower.startswith(".dw"):
            n = len(_split_ops(text[3:])) * 2
            pc += n
            sizes.append((lineno, text, n))
            continue

        sizes.append((lineno, text, 2))
        pc += 2

    # ---- Pass 2: emit bytes ----
    code = bytearray()
    pc = base_addr
    listing_lines = []

    for lineno, text, sz in sizes:
        start_pc = pc
        lower = text.lower()

        if lower.startswith(".org"):
            target = _imm(lineno, text[4:])
            code.extend(bytes(target - pc))
            pc = target
            if listing:
                listing_lines.append((start_pc, "", f".org {target:#x}"))
            continue

        if lower.startswith(".db"):
            emitted = bytearray()
            for tok in _split_ops(text[3:]):
                emitted.append(_value(lineno, tok, labels, 8))
        elif lower.startswith(".dw"):
            emitted = bytearray()
            for tok in _split_ops(text[3:]):
                v = _value(lineno, tok, labels, 16)
                emitted += bytes([(v >> 8) & 0xFF, v & 0xFF])
        else:
            word = _emit_instruction(lineno, text, labels)
            emitted = bytearray([(word >> 8) & 0xFF, word & 0xFF])

        assert len(emitted) == sz, f"Size mismatch line {lineno}"
        if listing:
            hexstr = " ".join(f"{b:02X}" for b in emitted[:8])
            if len(emitted) > 8:
                hexstr += " ..."
            listing_lines.append((start_pc, hexstr, text))
        code.extend(emitted)
        pc += sz

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"              {lbl}:")
            print(f"  {addr:04X}  {hexstr:<12s}  {src}")
        for addr in sorted(addr_labels):
            for lbl in addr_labels[addr]:
                print(f"              {lbl}:")

    return code


# ---------------------------------------------------------------------------
#  Operand resolution
# ---------------------------------------------------------------------------

def _imm(lineno: int, tok: str) -> int:
    try:
        return _parse_imm(tok)
    except ValueError:
        raise AsmError(lineno, f"Bad immediate: {tok.strip()!r}") from None


def _value(lineno: int, tok: str, labels: dict[str, int], bits: int) -> int:
    """Resolve a label or immediate and range-check it to *bits* (unsigned)."""
    tok = tok.strip()
    if tok in labels:
        val = labels[tok]
    else:
        try:
            val = _parse_imm(tok)
        except ValueError:
            raise AsmError(lineno, f"Undefined label or bad value: {tok!r}") from None
    if not 0 <= val < (1 << bits):
        raise AsmError(lineno, f"Value {val:#x} does not fit in {bits} bits")
    return val


def _reg(lineno: int, tok: str) -> int:
    try:
        return _parse_reg(tok)
    except ValueError as e:
        raise AsmError(lineno, str(e)) from None


def _want(lineno: int, mnem: str, ops: list[str], count: int):
    if len(ops) != count:
        raise AsmError(lineno, f"{mnem.upper()} expects {count} operand(s), "
                               f"got {len(ops)}")


# ---------------------------------------------------------------------------
#  Instruction encoding (pass 2)
# ---------------------------------------------------------------------------

def _emit_instruction(lineno: int, text: str, labels: dict[str, int]) -> int:
    """Encode one instruction to a 16-bit opcode word."""
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)
    low = [o.lower() for o in ops]

    if m == "cls":
        _want(lineno, m, ops, 0)
        return 0x00E0
    if m == "ret":
        _want(lineno, m, ops, 0)
        return 0x00EE
    if m == "sys":
        _want(lineno, m, ops, 1)
        return _value(lineno, ops[0], labels, 12)

    if m == "jp":
        if len(ops) == 2:
            if low[0] != "v0":
                raise AsmError(lineno, "JP with offset must use V0")
            return 0xB000 | _value(lineno, ops[1], labels, 12)
        _want(lineno, m, ops, 1)
        return 0x1000 | _value(lineno, ops[0], labels, 12)

    if m == "call":
        _want(lineno, m, ops, 1)
        return 0x2000 | _value(lineno, ops[0], labels, 12)

    if m in ("se", "sne"):
        _want(lineno, m, ops, 2)
        x = _reg(lineno, ops[0])
        if _is_reg(ops[1]):
            base = 0x5000 if m == "se" else 0x9000
            return base | (x << 8) | (_reg(lineno, ops[1]) << 4)
        base = 0x3000 if m == "se" else 0x4000
        return base | (x << 8) | _value(lineno, ops[1], labels, 8)

    if m == "ld":
        _want(lineno, m, ops, 2)
        dst, src = low
        if dst == "i":
            return 0xA000 | _value(lineno, ops[1], labels, 12)
        if dst in LD_SPECIAL_DST:
            return 0xF000 | (_reg(lineno, ops[1]) << 8) | LD_SPECIAL_DST[dst]
        x = _reg(lineno, ops[0])
        if src in LD_SPECIAL_SRC:
            return 0xF000 | (x << 8) | LD_SPECIAL_SRC[src]
        if _is_reg(src):
            return 0x8000 | (x << 8) | (_reg(lineno, ops[1]) << 4)
        return 0x6000 | (x << 8) | _value(lineno, ops[1], labels, 8)

    if m == "add":
        _want(lineno, m, ops, 2)
        if low[0] == "i":
            return 0xF01E | (_reg(lineno, ops[1]) << 8)
        x = _reg(lineno, ops[0])
        if _is_reg(ops[1]):
            return 0x8004 | (x << 8) | (_reg(lineno, ops[1]) << 4)
        return 0x7000 | (x << 8) | _value(lineno, ops[1], labels, 8)

    if m in ALU_SUB:
        _want(lineno, m, ops, 2)
        return (0x8000 | (_reg(lineno, ops[0]) << 8)
                | (_reg(lineno, ops[1]) << 4) | ALU_SUB[m])

    if m in ("shr", "shl"):
        # Optional second register is encoded but ignored by the machine
        if len(ops) not in (1, 2):
            _want(lineno, m, ops, 1)
        y = _reg(lineno, ops[1]) if len(ops) == 2 else 0
        return ((0x8006 if m == "shr" else 0x800E)
                | (_reg(lineno, ops[0]) << 8) | (y << 4))

    if m == "rnd":
        _want(lineno, m, ops, 2)
        return 0xC000 | (_reg(lineno, ops[0]) << 8) | _value(lineno, ops[1], labels, 8)

    if m == "drw":
        _want(lineno, m, ops, 3)
        return (0xD000 | (_reg(lineno, ops[0]) << 8)
                | (_reg(lineno, ops[1]) << 4) | _value(lineno, ops[2], labels, 4))

    if m in ("skp", "sknp"):
        _want(lineno, m, ops, 1)
        return (0xE09E if m == "skp" else 0xE0A1) | (_reg(lineno, ops[0]) << 8)

    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")
