#!/usr/bin/env python3
"""
CHIP-8 Emulator CLI
====================
Command-line front end for the CHIP-8 system emulator.

Provides:
  - Program loading (standard 0x200 or ETI 660 0x660 load address)
  - A real-time pygame window (60 fps, configurable instructions/frame)
  - Headless runs that print the final screen as text
  - Assembly and disassembly of program images
  - An interactive debug monitor (step / run / regs / dump / disasm)

Usage:
  python cli.py [-c RRGGBBAA] [-e] [--scale N] [--ipf N] ROM
  python cli.py --disasm ROM
  python cli.py --monitor ROM
  python cli.py --assemble SRC.asm OUT.ch8 [-l]
"""

from __future__ import annotations

import argparse
import cmd
import logging
import shlex
import sys
import time
from typing import Optional

from chip8 import (decode, mnemonic, MEM_SIZE, ADDR_MASK, LOAD_ADDR,
                   ETI660_LOAD_ADDR, SCREEN_W, SCREEN_H)
from asm import assemble, AsmError
from system import Chip8System, SystemConfig, parse_colour

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------


def disasm_one(mem: bytearray | bytes, addr: int) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, byte_count)."""
    def rb(a):
        a &= ADDR_MASK
        return mem[a] if a < len(mem) else 0

    word = (rb(addr) << 8) | rb(addr + 1)
    return mnemonic(decode(word)), 2


def disasm_range(mem: bytearray | bytes, start: int, count: int,
                 mark: Optional[int] = None) -> list[str]:
    """Listing lines for *count* instructions starting at *start*."""
    lines = []
    addr = start
    for _ in range(count):
        text, size = disasm_one(mem, addr)
        raw = " ".join(f"{mem[(addr + k) & ADDR_MASK]:02x}" for k in range(size))
        marker = ">>>" if addr == mark else "   "
        lines.append(f"  {marker} {addr:#05x}: {raw:<6s} {text}")
        addr += size
    return lines


# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------


class Chip8CLI(cmd.Cmd):
    """Interactive monitor for the CHIP-8 system."""

    intro = (
        "\n"
        "CHIP-8 Monitor.  Type 'help' for commands, 'quit' to exit.\n"
    )
    prompt = "CHIP8> "

    def __init__(self, system: Chip8System, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()

    def _out(self, text: str = ""):
        self.stdout.write(text + "\n")

    def _parse_addr(self, s: str) -> int:
        """Parse an address (0x hex, decimal, or 'pc' / 'i')."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            addr_before = cpu.pc
            text, _ = disasm_one(cpu.mem, addr_before)
            if not cpu.step():
                self._out(f"Waiting for key into V{cpu.key_wait_reg:X}.")
                break
            self._out(f"  {addr_before:#05x}: {text}")

    def do_run(self, arg):
        """Run N frames (default 60), stopping at breakpoints: run [frames]"""
        frames = self._parse_int(arg) if arg.strip() else 60
        cpu = self.sys.cpu
        if not self.breakpoints:
            self.sys.run_frames(frames)
            self._out(f"Ran {frames} frames.  PC={cpu.pc:#05x}")
            return
        # A run started on a breakpoint steps off it first
        resume = cpu.pc
        for f in range(frames):
            self.sys.run_frame(self.breakpoints, resume)
            resume = None
            if self.sys.break_pc is not None:
                self._out(f"Breakpoint at {cpu.pc:#05x} (frame {f}).")
                return
        self._out(f"Ran {frames} frames.  PC={cpu.pc:#05x}")

    def do_tick(self, arg):
        """Tick the timers N times: tick [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            self.sys.cpu.tick_timers()
        self._out(f"DT={self.sys.cpu.dt}  ST={self.sys.cpu.st}")

    def do_key(self, arg):
        """Press or release a keypad key: key <0-F> [down|up]"""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: key <0-F> [down|up]")
            return
        try:
            index = int(parts[0], 16)
        except ValueError:
            self._out(f"Bad key: {parts[0]!r}")
            return
        down = len(parts) < 2 or parts[1].lower() in ("down", "1", "press")
        self.sys.cpu.set_key(index, down)
        self._out(f"Key {index:X} {'down' if down else 'up'}.")

    def do_bp(self, arg):
        """Set a breakpoint: bp <address>"""
        if not arg.strip():
            for addr in sorted(self.breakpoints):
                self._out(f"  {addr:#05x}")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._out(f"Breakpoint set at {addr:#05x}")

    def do_bpd(self, arg):
        """Delete a breakpoint: bpd <address>"""
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._out(f"Breakpoint removed at {addr:#05x}")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers, timers and flags."""
        self._out(self.sys.dump_state())

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [length]"""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: dump <address> [length]")
            return
        addr = self._parse_addr(parts[0])
        length = self._parse_int(parts[1]) if len(parts) > 1 else 64
        mem = self.sys.cpu.mem
        for off in range(0, length, 16):
            base = addr + off
            row = [mem[(base + k) & ADDR_MASK] for k in range(min(16, length - off))]
            hexs = " ".join(f"{b:02x}" for b in row)
            self._out(f"  {base & ADDR_MASK:#05x}: {hexs}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        for line in disasm_range(self.sys.cpu.mem, addr, count,
                                 mark=self.sys.cpu.pc):
            self._out(line)

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        self._out(screen_text(self.sys))

    def do_quit(self, arg):
        """Exit the monitor."""
        return True

    def do_EOF(self, arg):
        self._out()
        return True

    def default(self, line):
        self._out(f"Unknown command: {line!r}.  Type 'help'.")

    def emptyline(self):
        pass


def screen_text(sys_emu: Chip8System) -> str:
    """Current framebuffer contents as '#'/'.' text."""
    fb = sys_emu.cpu.fb
    return "\n".join(
        "".join("#" if fb[y * SCREEN_W + x] else "." for x in range(SCREEN_W))
        for y in range(SCREEN_H)
    )


# ---------------------------------------------------------------------------
#  Real-time loop
# ---------------------------------------------------------------------------


def run_realtime(sys_emu: Chip8System, display) -> int:
    """Run frames at the configured rate until the display closes."""
    period = 1.0 / sys_emu.config.frame_rate
    next_frame = time.perf_counter()
    frames = 0
    while display.running:
        sys_emu.run_frame()
        frames += 1
        next_frame += period
        delay = next_frame - time.perf_counter()
        if delay > 0:
            time.sleep(delay)
        else:
            # Fell behind; resync rather than bursting
            next_frame = time.perf_counter()
    return frames


# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Interpret CHIP-8 code written in ROM.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py pong.ch8\n"
               "  python cli.py -c F7A8B8FF -e pong.ch8\n"
               "  python cli.py --disasm pong.ch8\n"
               "  python cli.py --frames 120 test.ch8\n"
               "  python cli.py --assemble game.asm game.ch8 -l\n"
    )
    parser.add_argument("rom", nargs="?", default=None,
                        help="CHIP-8 program image")
    parser.add_argument("-c", "--colour", type=str, default="FFFFFFFF",
                        metavar="RRGGBBAA",
                        help="Foreground colour of the display (default: FFFFFFFF)")
    parser.add_argument("-e", "--eti660", action="store_true",
                        help="Run in ETI 660 mode (load at 0x660)")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for the window (default: 10)")
    parser.add_argument("--ipf", type=int, default=8, metavar="N",
                        help="Instructions executed per 60 Hz frame (default: 8)")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC.asm to OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing (with --assemble)")
    parser.add_argument("--disasm", action="store_true",
                        help="Disassemble ROM and exit")
    parser.add_argument("--monitor", action="store_true",
                        help="Open the debug monitor instead of a window")
    parser.add_argument("--frames", type=int, default=None, metavar="N",
                        help="Run N frames headless, print the screen, exit")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        try:
            with open(src_path, "r") as f:
                source = f.read()
            code = assemble(source, ETI660_LOAD_ADDR if args.eti660 else LOAD_ADDR,
                            listing=args.listing)
            with open(out_path, "wb") as f:
                f.write(code)
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        except OSError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        print(f"Assembled {src_path} -> {out_path} ({len(code)} bytes)")
        return 0

    if args.rom is None:
        parser.print_help(sys.stderr)
        return 1

    try:
        colour = parse_colour(args.colour)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    if args.ipf < 1 or args.scale < 1:
        print("ERROR: --ipf and --scale must be positive", file=sys.stderr)
        return 1

    config = SystemConfig(colour=colour, eti660=args.eti660,
                          instructions_per_frame=args.ipf, scale=args.scale)
    sys_emu = Chip8System(config)
    try:
        sys_emu.load_binary_file(args.rom)
    except OSError as e:
        print(f"ERROR: cannot load '{args.rom}': {e}", file=sys.stderr)
        return 1

    # ---- Disassembly ----------------------------------------------------
    if args.disasm:
        start = config.load_addr
        with open(args.rom, "rb") as f:
            size = len(f.read(MEM_SIZE - start))
        for line in disasm_range(sys_emu.cpu.mem, start, (size + 1) // 2):
            print(line)
        return 0

    # ---- Headless run ---------------------------------------------------
    if args.frames is not None:
        sys_emu.run_frames(args.frames)
        print(screen_text(sys_emu))
        print(sys_emu.dump_state())
        return 0

    # ---- Monitor --------------------------------------------------------
    if args.monitor:
        cli = Chip8CLI(sys_emu)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return 0

    # ---- Window ---------------------------------------------------------
    try:
        import pygame  # noqa: F401
        from display import FramebufferDisplay
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame", file=sys.stderr)
        return 1

    display = FramebufferDisplay(sys_emu, scale=config.scale)
    display.start()
    if not display.running:
        print("[display] failed to open window", file=sys.stderr)
        return 1
    try:
        run_realtime(sys_emu, display)
    except KeyboardInterrupt:
        pass
    finally:
        display.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
