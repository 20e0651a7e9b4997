"""
CHIP-8 Interpreter Core
========================
Bit-exact execution engine for the classic CHIP-8 instruction set:
35 opcodes over 16 one-byte registers, a 4 KiB address space, a 64x32
monochrome framebuffer, and two 60 Hz countdown timers.

The core does no I/O.  A driver (system.py) feeds key transitions in,
calls step() a fixed number of times per frame, calls tick_timers()
once, and reads the framebuffer / beep flag out.

Quirk choices (original COSMAC semantics where interpreters disagree):
  - 8xy6 / 8xyE shift Vx in place (Vy is ignored)
  - Fx55 / Fx65 leave I unchanged
  - VF is written before the arithmetic result, so x == F keeps the result
  - Fx1E does not mask I; memory accesses through I wrap at 12 bits
"""

from __future__ import annotations

import logging
import random
from typing import NamedTuple, Optional

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE = 0x1000
ADDR_MASK = MEM_SIZE - 1

LOAD_ADDR        = 0x200   # standard program start
ETI660_LOAD_ADDR = 0x660   # ETI 660 compatibility mode

SCREEN_W = 64
SCREEN_H = 32

NUM_REGS = 16
NUM_KEYS = 16
STACK_DEPTH = 16
SP_INIT = 0xF               # empty stack: SP points at the top slot

FONT_ADDR = 0x000
FONT_GLYPH_BYTES = 5

# 16 hex-digit glyphs, 5 rows each, 4 pixels wide (high nibble)
FONT = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Mnemonics (decoded instruction kinds)
# ---------------------------------------------------------------------------

OP_CLS      = "CLS"        # 00E0
OP_RET      = "RET"        # 00EE
OP_JP       = "JP"         # 1nnn
OP_CALL     = "CALL"       # 2nnn
OP_SE_IMM   = "SE_IMM"     # 3xnn
OP_SNE_IMM  = "SNE_IMM"    # 4xnn
OP_SE_REG   = "SE_REG"     # 5xy0
OP_LD_IMM   = "LD_IMM"     # 6xnn
OP_ADD_IMM  = "ADD_IMM"    # 7xnn
OP_LD_REG   = "LD_REG"     # 8xy0
OP_OR       = "OR"         # 8xy1
OP_AND      = "AND"        # 8xy2
OP_XOR      = "XOR"        # 8xy3
OP_ADD_REG  = "ADD_REG"    # 8xy4
OP_SUB      = "SUB"        # 8xy5
OP_SHR      = "SHR"        # 8xy6
OP_SUBN     = "SUBN"       # 8xy7
OP_SHL      = "SHL"        # 8xyE
OP_SNE_REG  = "SNE_REG"    # 9xy0
OP_LD_I     = "LD_I"       # Annn
OP_JP_V0    = "JP_V0"      # Bnnn
OP_RND      = "RND"        # Cxnn
OP_DRW      = "DRW"        # Dxyn
OP_SKP      = "SKP"        # Ex9E
OP_SKNP     = "SKNP"       # ExA1
OP_LD_VX_DT = "LD_VX_DT"   # Fx07
OP_LD_VX_K  = "LD_VX_K"    # Fx0A
OP_LD_DT_VX = "LD_DT_VX"   # Fx15
OP_LD_ST_VX = "LD_ST_VX"   # Fx18
OP_ADD_I    = "ADD_I"      # Fx1E
OP_LD_F     = "LD_F"       # Fx29
OP_LD_B     = "LD_B"       # Fx33
OP_LD_I_VX  = "LD_I_VX"    # Fx55
OP_LD_VX_I  = "LD_VX_I"    # Fx65

# Secondary tables for the families that overload their low bits
_SYS_OPS = {0x0E0: OP_CLS, 0x0EE: OP_RET}

_ALU_OPS = {
    0x0: OP_LD_REG, 0x1: OP_OR,   0x2: OP_AND,  0x3: OP_XOR,
    0x4: OP_ADD_REG, 0x5: OP_SUB, 0x6: OP_SHR,  0x7: OP_SUBN,
    0xE: OP_SHL,
}

_KEY_OPS = {0x9E: OP_SKP, 0xA1: OP_SKNP}

_MISC_OPS = {
    0x07: OP_LD_VX_DT, 0x0A: OP_LD_VX_K,  0x15: OP_LD_DT_VX,
    0x18: OP_LD_ST_VX, 0x1E: OP_ADD_I,    0x29: OP_LD_F,
    0x33: OP_LD_B,     0x55: OP_LD_I_VX,  0x65: OP_LD_VX_I,
}

# Families fully determined by the high nibble
_SIMPLE_OPS = {
    0x1: OP_JP, 0x2: OP_CALL, 0x3: OP_SE_IMM, 0x4: OP_SNE_IMM,
    0x6: OP_LD_IMM, 0x7: OP_ADD_IMM, 0xA: OP_LD_I, 0xB: OP_JP_V0,
    0xC: OP_RND, 0xD: OP_DRW,
}


# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

class Instruction(NamedTuple):
    """A decoded opcode.  ``op`` is None for bit patterns with no meaning."""
    op: Optional[str]
    x: int
    y: int
    n: int
    nn: int
    nnn: int
    raw: int


def decode(opcode: int) -> Instruction:
    """Decode a 16-bit opcode word into an Instruction."""
    opcode &= 0xFFFF
    family = opcode >> 12
    x = (opcode >> 8) & 0xF
    y = (opcode >> 4) & 0xF
    n = opcode & 0xF
    nn = opcode & 0xFF
    nnn = opcode & 0xFFF

    if family in _SIMPLE_OPS:
        op = _SIMPLE_OPS[family]
    elif family == 0x0:
        op = _SYS_OPS.get(nnn)
    elif family == 0x5:
        op = OP_SE_REG if n == 0 else None
    elif family == 0x8:
        op = _ALU_OPS.get(n)
    elif family == 0x9:
        op = OP_SNE_REG if n == 0 else None
    elif family == 0xE:
        op = _KEY_OPS.get(nn)
    else:  # 0xF
        op = _MISC_OPS.get(nn)

    return Instruction(op, x, y, n, nn, nnn, opcode)


def mnemonic(ins: Instruction) -> str:
    """Render a decoded instruction as assembler text (asm.py syntax)."""
    x, y = ins.x, ins.y
    op = ins.op
    if op is None:
        return f".dw {ins.raw:#06x}"
    if op == OP_CLS:     return "CLS"
    if op == OP_RET:     return "RET"
    if op == OP_JP:      return f"JP {ins.nnn:#05x}"
    if op == OP_CALL:    return f"CALL {ins.nnn:#05x}"
    if op == OP_SE_IMM:  return f"SE V{x:X}, {ins.nn:#04x}"
    if op == OP_SNE_IMM: return f"SNE V{x:X}, {ins.nn:#04x}"
    if op == OP_SE_REG:  return f"SE V{x:X}, V{y:X}"
    if op == OP_LD_IMM:  return f"LD V{x:X}, {ins.nn:#04x}"
    if op == OP_ADD_IMM: return f"ADD V{x:X}, {ins.nn:#04x}"
    if op == OP_LD_REG:  return f"LD V{x:X}, V{y:X}"
    if op == OP_OR:      return f"OR V{x:X}, V{y:X}"
    if op == OP_AND:     return f"AND V{x:X}, V{y:X}"
    if op == OP_XOR:     return f"XOR V{x:X}, V{y:X}"
    if op == OP_ADD_REG: return f"ADD V{x:X}, V{y:X}"
    if op == OP_SUB:     return f"SUB V{x:X}, V{y:X}"
    if op == OP_SHR:     return f"SHR V{x:X}"
    if op == OP_SUBN:    return f"SUBN V{x:X}, V{y:X}"
    if op == OP_SHL:     return f"SHL V{x:X}"
    if op == OP_SNE_REG: return f"SNE V{x:X}, V{y:X}"
    if op == OP_LD_I:    return f"LD I, {ins.nnn:#05x}"
    if op == OP_JP_V0:   return f"JP V0, {ins.nnn:#05x}"
    if op == OP_RND:     return f"RND V{x:X}, {ins.nn:#04x}"
    if op == OP_DRW:     return f"DRW V{x:X}, V{y:X}, {ins.n}"
    if op == OP_SKP:     return f"SKP V{x:X}"
    if op == OP_SKNP:    return f"SKNP V{x:X}"
    if op == OP_LD_VX_DT: return f"LD V{x:X}, DT"
    if op == OP_LD_VX_K:  return f"LD V{x:X}, K"
    if op == OP_LD_DT_VX: return f"LD DT, V{x:X}"
    if op == OP_LD_ST_VX: return f"LD ST, V{x:X}"
    if op == OP_ADD_I:    return f"ADD I, V{x:X}"
    if op == OP_LD_F:     return f"LD F, V{x:X}"
    if op == OP_LD_B:     return f"LD B, V{x:X}"
    if op == OP_LD_I_VX:  return f"LD [I], V{x:X}"
    if op == OP_LD_VX_I:  return f"LD V{x:X}, [I]"
    return op


# ---------------------------------------------------------------------------
#  Machine
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 machine state plus the fetch/decode/execute engine."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng if rng is not None else random.Random()
        self.load_addr: int = LOAD_ADDR
        self.mem = bytearray(MEM_SIZE)
        self.fb = bytearray(SCREEN_W * SCREEN_H)
        self.keys: list[bool] = [False] * NUM_KEYS
        self._reset_state()

        self._dispatch = {
            OP_CLS: self._op_cls,         OP_RET: self._op_ret,
            OP_JP: self._op_jp,           OP_CALL: self._op_call,
            OP_SE_IMM: self._op_se_imm,   OP_SNE_IMM: self._op_sne_imm,
            OP_SE_REG: self._op_se_reg,   OP_LD_IMM: self._op_ld_imm,
            OP_ADD_IMM: self._op_add_imm, OP_LD_REG: self._op_ld_reg,
            OP_OR: self._op_or,           OP_AND: self._op_and,
            OP_XOR: self._op_xor,         OP_ADD_REG: self._op_add_reg,
            OP_SUB: self._op_sub,         OP_SHR: self._op_shr,
            OP_SUBN: self._op_subn,       OP_SHL: self._op_shl,
            OP_SNE_REG: self._op_sne_reg, OP_LD_I: self._op_ld_i,
            OP_JP_V0: self._op_jp_v0,     OP_RND: self._op_rnd,
            OP_DRW: self._op_drw,         OP_SKP: self._op_skp,
            OP_SKNP: self._op_sknp,       OP_LD_VX_DT: self._op_ld_vx_dt,
            OP_LD_VX_K: self._op_ld_vx_k, OP_LD_DT_VX: self._op_ld_dt_vx,
            OP_LD_ST_VX: self._op_ld_st_vx, OP_ADD_I: self._op_add_i,
            OP_LD_F: self._op_ld_f,       OP_LD_B: self._op_ld_b,
            OP_LD_I_VX: self._op_ld_i_vx, OP_LD_VX_I: self._op_ld_vx_i,
        }
        # Font in place and PC at 0x200 even before a program is loaded
        self.load_program(b"")

    def _reset_state(self):
        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = self.load_addr
        self.sp: int = SP_INIT
        self.stack: list[int] = [0] * STACK_DEPTH
        self.depth: int = 0
        self.dt: int = 0
        self.st: int = 0
        self.fb[:] = bytes(len(self.fb))
        self.keys = [False] * NUM_KEYS
        self.key_wait_reg: Optional[int] = None

        # Output flags: set by the engine, cleared by the consumer
        self.draw_flag: bool = False
        self.beep_flag: bool = False

        # Diagnostics
        self.cycle_count: int = 0
        self.stack_wraps: int = 0
        self.pc_wraps: int = 0

    # -- Loader --

    def load_program(self, program: bytes | bytearray,
                     load_addr: int = LOAD_ADDR):
        """Reset the machine and place *program* at *load_addr*.

        Memory is zeroed, the font is written at address 0, and the
        image is truncated to the space left below 0x1000.
        """
        if not 0 <= load_addr < MEM_SIZE:
            raise ValueError(f"Load address {load_addr:#x} outside memory")
        self.load_addr = load_addr
        self._reset_state()
        self.mem[:] = bytes(MEM_SIZE)
        self.mem[FONT_ADDR:FONT_ADDR + len(FONT)] = FONT

        room = MEM_SIZE - load_addr
        if len(program) > room:
            log.debug("Program image %d bytes, truncated to %d",
                      len(program), room)
        image = bytes(program[:room])
        self.mem[load_addr:load_addr + len(image)] = image
        log.debug("Loaded %d bytes at %#05x", len(image), load_addr)

    # -- Memory access (12-bit wrap) --

    def mem_read8(self, addr: int) -> int:
        return self.mem[addr & ADDR_MASK]

    def mem_write8(self, addr: int, val: int):
        self.mem[addr & ADDR_MASK] = val & 0xFF

    def fetch16(self) -> int:
        """Read the big-endian opcode at PC and advance PC by 2."""
        op = (self.mem_read8(self.pc) << 8) | self.mem_read8(self.pc + 1)
        self.set_pc(self.pc + 2)
        return op

    def set_pc(self, addr: int):
        """All PC writes that can leave memory go through here."""
        if addr >= MEM_SIZE:
            addr &= ADDR_MASK
            self.pc_wraps += 1
            log.warning("PC ran off the end of memory, wrapped to %#05x",
                        addr)
        self.pc = addr

    # -- Stack helpers --

    # SP alone cannot tell a full stack from an empty one (both sit at 15),
    # so call depth is tracked separately for the wrap diagnostics.

    def push(self, addr: int):
        if self.depth == STACK_DEPTH:
            self.stack_wraps += 1
            log.warning("Stack overflow at PC=%#05x, SP wraps", self.pc)
        else:
            self.depth += 1
        self.stack[self.sp] = addr
        self.sp = (self.sp - 1) & 0xF

    def pop(self) -> int:
        if self.depth == 0:
            self.stack_wraps += 1
            log.warning("Stack underflow at PC=%#05x, SP wraps", self.pc)
        else:
            self.depth -= 1
        self.sp = (self.sp + 1) & 0xF
        return self.stack[self.sp]

    # =====================================================================
    #  STEP: one fetch/decode/execute cycle
    # =====================================================================

    @property
    def waiting(self) -> bool:
        return self.key_wait_reg is not None

    def step(self) -> bool:
        """Execute one instruction.  Returns False while blocked on Fx0A."""
        if self.key_wait_reg is not None:
            return False
        ins = decode(self.fetch16())
        if ins.op is not None:
            self._dispatch[ins.op](ins)
        self.cycle_count += 1
        return True

    def run(self, max_steps: int = 1_000_000) -> int:
        """Step until *max_steps* or until blocked on a key.  Returns steps run."""
        done = 0
        while done < max_steps and self.step():
            done += 1
        return done

    # -- Timers --

    def tick_timers(self):
        """One 60 Hz tick: count both timers down, beep on ST reaching 0."""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1
            if self.st == 0:
                self.beep_flag = True

    # -- Input bridge --

    def set_key(self, index: int, is_down: bool):
        """Record a key transition; an up-to-down edge releases a pending Fx0A."""
        index &= 0xF
        was_down = self.keys[index]
        self.keys[index] = bool(is_down)
        if is_down and not was_down and self.key_wait_reg is not None:
            self.v[self.key_wait_reg] = index
            self.key_wait_reg = None

    # =====================================================================
    #  Instruction handlers
    # =====================================================================

    def _skip_if(self, cond: bool):
        if cond:
            self.set_pc(self.pc + 2)

    # -- 0x0 / 0x1 / 0x2: flow --

    def _op_cls(self, ins: Instruction):
        self.fb[:] = bytes(len(self.fb))
        self.draw_flag = True

    def _op_ret(self, ins: Instruction):
        self.pc = self.pop()

    def _op_jp(self, ins: Instruction):
        self.pc = ins.nnn

    def _op_call(self, ins: Instruction):
        self.push(self.pc)
        self.pc = ins.nnn

    # -- 0x3 / 0x4 / 0x5 / 0x9: skips --

    def _op_se_imm(self, ins: Instruction):
        self._skip_if(self.v[ins.x] == ins.nn)

    def _op_sne_imm(self, ins: Instruction):
        self._skip_if(self.v[ins.x] != ins.nn)

    def _op_se_reg(self, ins: Instruction):
        self._skip_if(self.v[ins.x] == self.v[ins.y])

    def _op_sne_reg(self, ins: Instruction):
        self._skip_if(self.v[ins.x] != self.v[ins.y])

    # -- 0x6 / 0x7: immediates --

    def _op_ld_imm(self, ins: Instruction):
        self.v[ins.x] = ins.nn

    def _op_add_imm(self, ins: Instruction):
        self.v[ins.x] = (self.v[ins.x] + ins.nn) & 0xFF

    # -- 0x8: ALU --
    # VF is written first, then Vx, so 8Fy_ ends with the result in VF.

    def _op_ld_reg(self, ins: Instruction):
        self.v[ins.x] = self.v[ins.y]

    def _op_or(self, ins: Instruction):
        self.v[ins.x] |= self.v[ins.y]

    def _op_and(self, ins: Instruction):
        self.v[ins.x] &= self.v[ins.y]

    def _op_xor(self, ins: Instruction):
        self.v[ins.x] ^= self.v[ins.y]

    def _op_add_reg(self, ins: Instruction):
        total = self.v[ins.x] + self.v[ins.y]
        self.v[0xF] = 1 if total > 0xFF else 0
        self.v[ins.x] = total & 0xFF

    def _op_sub(self, ins: Instruction):
        vx, vy = self.v[ins.x], self.v[ins.y]
        self.v[0xF] = 1 if vx > vy else 0
        self.v[ins.x] = (vx - vy) & 0xFF

    def _op_shr(self, ins: Instruction):
        vx = self.v[ins.x]
        self.v[0xF] = vx & 1
        self.v[ins.x] = vx >> 1

    def _op_subn(self, ins: Instruction):
        vx, vy = self.v[ins.x], self.v[ins.y]
        self.v[0xF] = 1 if vy > vx else 0
        self.v[ins.x] = (vy - vx) & 0xFF

    def _op_shl(self, ins: Instruction):
        vx = self.v[ins.x]
        self.v[0xF] = (vx >> 7) & 1
        self.v[ins.x] = (vx << 1) & 0xFF

    # -- 0xA / 0xB / 0xC --

    def _op_ld_i(self, ins: Instruction):
        self.i = ins.nnn

    def _op_jp_v0(self, ins: Instruction):
        self.set_pc(self.v[0] + ins.nnn)

    def _op_rnd(self, ins: Instruction):
        self.v[ins.x] = self.rng.randrange(256) & ins.nn

    # -- 0xD: sprite draw --

    def _op_drw(self, ins: Instruction):
        x0 = self.v[ins.x]
        y0 = self.v[ins.y]
        fb = self.fb
        self.v[0xF] = 0
        for row in range(ins.n):
            sprite = self.mem_read8(self.i + row)
            py = (y0 + row) % SCREEN_H
            for col in range(8):
                bit = (sprite >> (7 - col)) & 1
                if not bit:
                    continue
                pos = py * SCREEN_W + (x0 + col) % SCREEN_W
                if fb[pos]:
                    self.v[0xF] = 1
                fb[pos] ^= 1
        self.draw_flag = True

    # -- 0xE: keypad skips --

    def _op_skp(self, ins: Instruction):
        self._skip_if(self.keys[self.v[ins.x] & 0xF])

    def _op_sknp(self, ins: Instruction):
        self._skip_if(not self.keys[self.v[ins.x] & 0xF])

    # -- 0xF: timers, I, memory --

    def _op_ld_vx_dt(self, ins: Instruction):
        self.v[ins.x] = self.dt

    def _op_ld_vx_k(self, ins: Instruction):
        self.key_wait_reg = ins.x

    def _op_ld_dt_vx(self, ins: Instruction):
        self.dt = self.v[ins.x]

    def _op_ld_st_vx(self, ins: Instruction):
        self.st = self.v[ins.x]

    def _op_add_i(self, ins: Instruction):
        self.i = (self.i + self.v[ins.x]) & 0xFFFF

    def _op_ld_f(self, ins: Instruction):
        self.i = FONT_ADDR + self.v[ins.x] * FONT_GLYPH_BYTES

    def _op_ld_b(self, ins: Instruction):
        vx = self.v[ins.x]
        self.mem_write8(self.i, vx // 100)
        self.mem_write8(self.i + 1, (vx // 10) % 10)
        self.mem_write8(self.i + 2, vx % 10)

    def _op_ld_i_vx(self, ins: Instruction):
        for r in range(ins.x + 1):
            self.mem_write8(self.i + r, self.v[r])

    def _op_ld_vx_i(self, ins: Instruction):
        for r in range(ins.x + 1):
            self.v[r] = self.mem_read8(self.i + r)

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:02x}" for r in range(row, row + 4)))
        lines.append(f"  PC={self.pc:#05x}  I={self.i:#05x}  SP={self.sp:x}  "
                     f"DT={self.dt:02x}  ST={self.st:02x}")
        wait = "-" if self.key_wait_reg is None else f"V{self.key_wait_reg:X}"
        lines.append(f"  WAIT={wait}  DRAW={int(self.draw_flag)}  "
                     f"BEEP={int(self.beep_flag)}  CYCLES={self.cycle_count}")
        return "\n".join(lines)
