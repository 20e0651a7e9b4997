"""
CHIP-8 System Driver
=====================
Wires a Chip8 core to the outside world:
  - an explicit SystemConfig (colour, load mode, pacing) instead of globals
  - program loading from bytes or a file
  - the per-frame schedule: drain key transitions, run N instructions,
    tick the timers once, publish the framebuffer

Key transitions and frames cross threads through small locked handoffs,
so a display thread can feed input and read frames while the main loop
runs the machine.  Each buffer has exactly one writer and one reader.
"""

from __future__ import annotations

import logging
import random
import threading
from collections import deque
from dataclasses import dataclass
from typing import Collection, Optional

from chip8 import (Chip8, LOAD_ADDR, ETI660_LOAD_ADDR, MEM_SIZE,
                   SCREEN_W, SCREEN_H, NUM_KEYS)

log = logging.getLogger(__name__)

DEFAULT_COLOUR = 0xFFFFFFFF   # RGBA, opaque white
DEFAULT_IPF = 8               # instructions per frame (~480 Hz at 60 fps)
DEFAULT_FRAME_RATE = 60


def parse_colour(text: str) -> int:
    """Parse ``RRGGBBAA`` or ``RRGGBB`` hex (optional ``#`` / ``0x``) to RGBA."""
    s = text.strip()
    if s.startswith("#"):
        s = s[1:]
    elif s.lower().startswith("0x"):
        s = s[2:]
    if len(s) not in (6, 8):
        raise ValueError(f"Colour must be RRGGBB or RRGGBBAA, got {text!r}")
    try:
        val = int(s, 16)
    except ValueError:
        raise ValueError(f"Colour is not hexadecimal: {text!r}") from None
    if len(s) == 6:
        val = (val << 8) | 0xFF
    return val


def colour_rgb(colour: int) -> tuple[int, int, int]:
    """Split an RGBA int into an (R, G, B) tuple."""
    return ((colour >> 24) & 0xFF, (colour >> 16) & 0xFF, (colour >> 8) & 0xFF)


@dataclass
class SystemConfig:
    colour: int = DEFAULT_COLOUR
    eti660: bool = False
    instructions_per_frame: int = DEFAULT_IPF
    frame_rate: int = DEFAULT_FRAME_RATE
    scale: int = 10

    @property
    def load_addr(self) -> int:
        return ETI660_LOAD_ADDR if self.eti660 else LOAD_ADDR


class Chip8System:
    """A Chip8 core plus the frame loop and I/O handoffs around it."""

    def __init__(self, config: Optional[SystemConfig] = None,
                 rng: Optional[random.Random] = None):
        self.config = config if config is not None else SystemConfig()
        self.cpu = Chip8(rng=rng)
        self.cpu.load_program(b"", self.config.load_addr)
        self.frame_count: int = 0
        self.break_pc: Optional[int] = None

        # Input: written by the input source, drained by run_frame
        self._key_events: deque[tuple[int, bool]] = deque()
        self._key_lock = threading.Lock()

        # Output: written by run_frame, read by the renderer / audio sink
        self._frame_lock = threading.Lock()
        self._frame = bytes(SCREEN_W * SCREEN_H)
        self._frame_fresh = False
        self._beep = False

    # -- Loading --

    def load_binary(self, data: bytes | bytearray):
        """Reset the machine and load a program image at the configured address."""
        self.cpu.load_program(data, self.config.load_addr)
        self.frame_count = 0
        with self._key_lock:
            self._key_events.clear()
        with self._frame_lock:
            self._frame = bytes(self.cpu.fb)
            self._frame_fresh = True
            self._beep = False

    def load_binary_file(self, path: str):
        """Load a program image from *path*; OSError propagates to the caller."""
        with open(path, "rb") as f:
            data = f.read(MEM_SIZE)
        self.load_binary(data)
        log.debug("Loaded '%s' (%d bytes)", path, len(data))

    # -- Input source side --

    def set_key(self, index: int, is_down: bool):
        """Queue a key transition; applied at the start of the next frame."""
        if not 0 <= index < NUM_KEYS:
            raise ValueError(f"Keypad index out of range: {index}")
        with self._key_lock:
            self._key_events.append((index, bool(is_down)))

    def press_key(self, index: int):
        self.set_key(index, True)

    def release_key(self, index: int):
        self.set_key(index, False)

    def _drain_keys(self):
        with self._key_lock:
            events = list(self._key_events)
            self._key_events.clear()
        for index, down in events:
            self.cpu.set_key(index, down)

    # -- Frame loop --

    def run_frame(self, stop_at: Collection[int] = (),
                  resume_pc: Optional[int] = None) -> int:
        """Run one display frame.  Returns the number of instructions executed.

        If PC lands on an address in *stop_at* the frame ends early:
        ``break_pc`` is set, and the timer tick and frame count are left
        for the next call.  *resume_pc* is not checked for the first
        instruction, so a run can continue from a breakpoint.
        """
        self._drain_keys()
        cpu = self.cpu
        executed = 0
        self.break_pc = None
        for n in range(self.config.instructions_per_frame):
            if cpu.pc in stop_at and not (n == 0 and cpu.pc == resume_pc):
                self.break_pc = cpu.pc
                break
            if cpu.step():
                executed += 1
        else:
            cpu.tick_timers()
            self.frame_count += 1

        with self._frame_lock:
            if cpu.draw_flag:
                self._frame = bytes(cpu.fb)
                self._frame_fresh = True
                cpu.draw_flag = False
            if cpu.beep_flag:
                self._beep = True
                cpu.beep_flag = False
        return executed

    def run_frames(self, n: int) -> int:
        total = 0
        for _ in range(n):
            total += self.run_frame()
        return total

    # -- Renderer / audio side --

    def take_frame(self) -> tuple[bytes, bool]:
        """Return (pixels, fresh).  *fresh* is True once per published frame."""
        with self._frame_lock:
            fresh = self._frame_fresh
            self._frame_fresh = False
            return self._frame, fresh

    def take_beep(self) -> bool:
        """Consume the beep request, if any."""
        with self._frame_lock:
            beep = self._beep
            self._beep = False
            return beep

    @property
    def waiting_for_key(self) -> bool:
        return self.cpu.waiting

    def dump_state(self) -> str:
        lines = [
            f"Frame {self.frame_count}  "
            f"(ipf={self.config.instructions_per_frame}, "
            f"load={self.config.load_addr:#05x})",
            self.cpu.dump_regs(),
        ]
        if self.cpu.stack_wraps or self.cpu.pc_wraps:
            lines.append(f"  stack wraps={self.cpu.stack_wraps}  "
                         f"pc wraps={self.cpu.pc_wraps}")
        return "\n".join(lines)
