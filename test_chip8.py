"""
CHIP-8 Core Test Suite
=======================
Covers every opcode family, the timer/beep edge, the key-wait latch,
stack discipline and wraparound diagnostics.

Run with:  python -m pytest test_chip8.py
"""

import random
import unittest

from chip8 import (Chip8, decode, mnemonic, FONT, LOAD_ADDR, ETI660_LOAD_ADDR,
                   MEM_SIZE, SCREEN_W, SCREEN_H, SP_INIT,
                   OP_CLS, OP_RET, OP_SE_REG, OP_SHL, OP_LD_VX_I)
from asm import assemble


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def make_cpu(words=(), source: str = None, load_addr: int = LOAD_ADDR,
             seed: int = 1234) -> Chip8:
    """Build a machine loaded with opcode words or assembly source."""
    if source is not None:
        image = assemble(source, load_addr)
    else:
        image = b"".join(w.to_bytes(2, "big") for w in words)
    cpu = Chip8(rng=random.Random(seed))
    cpu.load_program(image, load_addr)
    return cpu


def pixel(cpu: Chip8, x: int, y: int) -> int:
    return cpu.fb[y * SCREEN_W + x]


# =========================================================================
#  Memory & loader
# =========================================================================

class TestLoader(unittest.TestCase):

    def test_font_at_zero(self):
        cpu = make_cpu()
        self.assertEqual(bytes(cpu.mem[:80]), FONT)
        self.assertEqual(len(FONT), 80)

    def test_program_at_load_addr(self):
        cpu = make_cpu([0x1234, 0xABCD])
        self.assertEqual(cpu.pc, LOAD_ADDR)
        self.assertEqual(bytes(cpu.mem[0x200:0x204]), b"\x12\x34\xab\xcd")

    def test_eti660_load_addr(self):
        cpu = make_cpu([0x6042], load_addr=ETI660_LOAD_ADDR)
        self.assertEqual(cpu.pc, 0x660)
        self.assertEqual(cpu.mem[0x660], 0x60)
        cpu.step()
        self.assertEqual(cpu.v[0], 0x42)

    def test_oversize_image_truncated(self):
        cpu = Chip8()
        cpu.load_program(bytes([0xAA]) * 5000, LOAD_ADDR)
        self.assertEqual(len(cpu.mem), MEM_SIZE)
        self.assertEqual(cpu.mem[0xFFF], 0xAA)
        self.assertEqual(bytes(cpu.mem[:80]), FONT)

    def test_reload_clears_previous_state(self):
        cpu = make_cpu([0x6105, 0x00E0])
        cpu.run(2)
        cpu.fb[5] = 1
        cpu.load_program(b"\x00\x00")
        self.assertEqual(cpu.v[1], 0)
        self.assertFalse(any(cpu.fb))
        self.assertEqual(cpu.mem[0x202], 0)
        self.assertFalse(cpu.draw_flag)

    def test_initial_state(self):
        cpu = make_cpu()
        self.assertEqual(cpu.sp, SP_INIT)
        self.assertEqual(cpu.i, 0)
        self.assertEqual((cpu.dt, cpu.st), (0, 0))
        self.assertIsNone(cpu.key_wait_reg)
        self.assertEqual(len(cpu.fb), SCREEN_W * SCREEN_H)

    def test_fresh_machine_has_font(self):
        cpu = Chip8()
        self.assertEqual(bytes(cpu.mem[:80]), FONT)
        self.assertEqual(cpu.pc, LOAD_ADDR)
        self.assertEqual(cpu.mem[LOAD_ADDR], 0)

    def test_bad_load_addr(self):
        with self.assertRaises(ValueError):
            Chip8().load_program(b"", 0x1000)


# =========================================================================
#  Decoder
# =========================================================================

class TestDecoder(unittest.TestCase):

    def test_fields(self):
        ins = decode(0xD12F)
        self.assertEqual((ins.x, ins.y, ins.n, ins.nn, ins.nnn),
                         (1, 2, 0xF, 0x2F, 0x12F))

    def test_secondary_tables(self):
        self.assertEqual(decode(0x00E0).op, OP_CLS)
        self.assertEqual(decode(0x00EE).op, OP_RET)
        self.assertEqual(decode(0x8ABE).op, OP_SHL)
        self.assertEqual(decode(0xF365).op, OP_LD_VX_I)
        self.assertEqual(decode(0x5120).op, OP_SE_REG)

    def test_invalid_patterns(self):
        for word in (0x0000, 0x0123, 0x5121, 0x8128, 0x812F, 0x9121,
                     0xE100, 0xF1FF):
            self.assertIsNone(decode(word).op, f"{word:#06x}")

    def test_mnemonics(self):
        self.assertEqual(mnemonic(decode(0x00E0)), "CLS")
        self.assertEqual(mnemonic(decode(0xD015)), "DRW V0, V1, 5")
        self.assertEqual(mnemonic(decode(0xF20A)), "LD V2, K")
        self.assertEqual(mnemonic(decode(0xB300)), "JP V0, 0x300")
        self.assertEqual(mnemonic(decode(0x0123)), ".dw 0x0123")

    def test_mnemonic_reassembles(self):
        for word in (0x00EE, 0x1ABC, 0x2300, 0x3A7F, 0x4B00, 0x5CD0,
                     0x6E12, 0x7F01, 0x8124, 0x8506, 0x870E, 0x9AB0,
                     0xA123, 0xB2F0, 0xC3FF, 0xD7A3, 0xE49E, 0xE5A1,
                     0xF607, 0xF70A, 0xF715, 0xF818, 0xF91E, 0xFA29,
                     0xFB33, 0xFC55, 0xFD65):
            text = mnemonic(decode(word))
            self.assertEqual(int.from_bytes(assemble(text), "big"), word, text)


# =========================================================================
#  Flow control: 00E0 00EE 1nnn 2nnn Bnnn
# =========================================================================

class TestFlow(unittest.TestCase):

    def test_pc_advances_by_two(self):
        cpu = make_cpu([0x6000])
        cpu.step()
        self.assertEqual(cpu.pc, 0x202)

    def test_clear_screen(self):
        cpu = make_cpu([0x00E0])
        cpu.fb[:] = bytes([1]) * len(cpu.fb)
        cpu.step()
        self.assertFalse(any(cpu.fb))
        self.assertTrue(cpu.draw_flag)

    def test_jump(self):
        cpu = make_cpu([0x1456])
        cpu.step()
        self.assertEqual(cpu.pc, 0x456)

    def test_call_and_return(self):
        cpu = make_cpu(source="""
            call sub
            ld v1, 7
        sub:
            ld v2, 9
            ret
        """)
        cpu.step()
        self.assertEqual(cpu.pc, 0x204)
        self.assertEqual(cpu.sp, 14)
        self.assertEqual(cpu.stack[15], 0x202)
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x202)
        self.assertEqual(cpu.sp, SP_INIT)
        cpu.step()
        self.assertEqual((cpu.v[1], cpu.v[2]), (7, 9))

    def test_nested_calls_16_deep(self):
        # Sixteen calls fill the stack exactly; sixteen returns unwind it
        lines = [f"l{i}: call l{i + 1}\nret" for i in range(15)]
        lines.append("l15: ret")
        cpu = make_cpu(source="call l0\nend: jp end\n" + "\n".join(lines))
        cpu.run(16)
        self.assertEqual(cpu.depth, 16)
        self.assertEqual(cpu.sp, SP_INIT)  # SP wrapped through 0 once
        cpu.run(16)
        self.assertEqual(cpu.pc, 0x202)
        self.assertEqual(cpu.sp, SP_INIT)
        self.assertEqual(cpu.depth, 0)
        self.assertEqual(cpu.stack_wraps, 0)

    def test_jump_offset(self):
        cpu = make_cpu([0x6010, 0xB300])
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x310)

    def test_invalid_opcode_is_noop(self):
        cpu = make_cpu([0x5121, 0x0123, 0x812F])
        before = (list(cpu.v), cpu.i, cpu.sp, bytes(cpu.mem))
        cpu.run(3)
        self.assertEqual(cpu.pc, 0x206)
        self.assertEqual((list(cpu.v), cpu.i, cpu.sp, bytes(cpu.mem)), before)


# =========================================================================
#  Skips: 3xnn 4xnn 5xy0 9xy0
# =========================================================================

class TestSkips(unittest.TestCase):

    def _pc_after(self, *words):
        cpu = make_cpu(words)
        cpu.run(len(words))
        return cpu.pc

    def test_se_imm(self):
        self.assertEqual(self._pc_after(0x6105, 0x3105), 0x206)
        self.assertEqual(self._pc_after(0x6105, 0x3106), 0x204)

    def test_sne_imm(self):
        self.assertEqual(self._pc_after(0x6105, 0x4106), 0x206)
        self.assertEqual(self._pc_after(0x6105, 0x4105), 0x204)

    def test_se_reg(self):
        self.assertEqual(self._pc_after(0x6105, 0x6205, 0x5120), 0x208)
        self.assertEqual(self._pc_after(0x6105, 0x6206, 0x5120), 0x206)

    def test_sne_reg(self):
        self.assertEqual(self._pc_after(0x6105, 0x6206, 0x9120), 0x208)
        self.assertEqual(self._pc_after(0x6105, 0x6205, 0x9120), 0x206)


# =========================================================================
#  Registers: 6xnn 7xnn and the 8xy_ ALU
# =========================================================================

class TestALU(unittest.TestCase):

    def _alu(self, a: int, b: int, sub: int) -> Chip8:
        cpu = make_cpu([0x6100 | a, 0x6200 | b, 0x8120 | sub])
        cpu.run(3)
        return cpu

    def test_load_and_add_imm(self):
        cpu = make_cpu([0x63FF, 0x7302, 0x6F07, 0x73FE])
        cpu.run(2)
        self.assertEqual(cpu.v[3], 0x01)
        cpu.run(2)
        self.assertEqual(cpu.v[3], 0xFF)
        self.assertEqual(cpu.v[0xF], 7)  # 7xnn never touches VF

    def test_logic(self):
        self.assertEqual(self._alu(0xF0, 0x3C, 0x0).v[1], 0x3C)
        self.assertEqual(self._alu(0xF0, 0x0F, 0x1).v[1], 0xFF)
        self.assertEqual(self._alu(0xF0, 0x3C, 0x2).v[1], 0x30)
        self.assertEqual(self._alu(0xF0, 0x3C, 0x3).v[1], 0xCC)

    def test_add_with_carry_all_pairs_sampled(self):
        for a in range(0, 256, 7):
            for b in range(0, 256, 11):
                cpu = self._alu(a, b, 0x4)
                self.assertEqual(cpu.v[1], (a + b) % 256)
                self.assertEqual(cpu.v[0xF], 1 if a + b > 255 else 0)

    def test_sub_with_borrow(self):
        for a, b in ((10, 3), (3, 10), (7, 7), (0, 255), (255, 0)):
            cpu = self._alu(a, b, 0x5)
            self.assertEqual(cpu.v[1], (a - b) % 256)
            self.assertEqual(cpu.v[0xF], 1 if a > b else 0, (a, b))

    def test_subn(self):
        for a, b in ((10, 3), (3, 10), (7, 7)):
            cpu = self._alu(a, b, 0x7)
            self.assertEqual(cpu.v[1], (b - a) % 256)
            self.assertEqual(cpu.v[0xF], 1 if b > a else 0, (a, b))

    def test_shift_right_uses_vx(self):
        for a in (0x00, 0x01, 0x80, 0xFF, 0x55):
            cpu = self._alu(a, 0xAA, 0x6)
            self.assertEqual(cpu.v[1], a // 2)
            self.assertEqual(cpu.v[0xF], a & 1)
            self.assertEqual(cpu.v[2], 0xAA)

    def test_shift_left_uses_vx(self):
        for a in (0x00, 0x01, 0x80, 0xFF, 0x55):
            cpu = self._alu(a, 0x01, 0xE)
            self.assertEqual(cpu.v[1], (a * 2) % 256)
            self.assertEqual(cpu.v[0xF], a >> 7)

    def test_vf_as_destination_keeps_result(self):
        # VF is set first, then overwritten by the result
        cpu = make_cpu([0x6FF0, 0x6120, 0x8F14])
        cpu.run(3)
        self.assertEqual(cpu.v[0xF], 0x10)


# =========================================================================
#  Annn Cxnn Dxyn
# =========================================================================

class TestIndexRandomDraw(unittest.TestCase):

    def test_load_i(self):
        cpu = make_cpu([0xA123])
        cpu.step()
        self.assertEqual(cpu.i, 0x123)

    def test_random_masked(self):
        cpu = make_cpu([0xC10F] * 50)
        for _ in range(50):
            cpu.step()
            self.assertEqual(cpu.v[1] & 0xF0, 0)
        cpu = make_cpu([0xC100])
        cpu.step()
        self.assertEqual(cpu.v[1], 0)

    def test_random_uses_injected_rng(self):
        a = make_cpu([0xC1FF], seed=99)
        b = make_cpu([0xC1FF], seed=99)
        a.step()
        b.step()
        self.assertEqual(a.v[1], b.v[1])

    def test_draw_font_zero_end_to_end(self):
        cpu = make_cpu([0x600A, 0x6105, 0xA000, 0xD015])
        cpu.run(4)
        self.assertEqual(cpu.v[0xF], 0)
        self.assertTrue(cpu.draw_flag)
        for row, bits in enumerate(FONT[:5]):
            for col in range(8):
                expect = (bits >> (7 - col)) & 1
                self.assertEqual(pixel(cpu, 10 + col, 5 + row), expect,
                                 (col, row))
        self.assertEqual(sum(cpu.fb), sum(bin(b).count("1") for b in FONT[:5]))

    def test_draw_twice_collides_and_erases(self):
        cpu = make_cpu(source="""
            ld v0, 20
            ld v1, 7
            ld i, sprite
            drw v0, v1, 1
            drw v0, v1, 1
        sprite:
            .db 0xFF
        """)
        cpu.run(4)
        self.assertEqual(cpu.v[0xF], 0)
        self.assertEqual(sum(cpu.fb), 8)
        cpu.step()
        self.assertEqual(cpu.v[0xF], 1)
        self.assertFalse(any(cpu.fb))

    def test_draw_wraps_both_axes(self):
        cpu = make_cpu(source="""
            ld v0, 60
            ld v1, 31
            ld i, sprite
            drw v0, v1, 2
        sprite:
            .db 0xFF, 0x81
        """)
        cpu.run(4)
        for x in (60, 61, 62, 63, 0, 1, 2, 3):
            self.assertEqual(pixel(cpu, x, 31), 1, x)
        self.assertEqual(pixel(cpu, 60, 0), 1)
        self.assertEqual(pixel(cpu, 3, 0), 1)
        self.assertEqual(pixel(cpu, 61, 0), 0)

    def test_draw_coordinates_wrap_modulo(self):
        cpu = make_cpu([0x6044, 0x6122, 0xA000, 0xD011])  # (68, 34) -> (4, 2)
        cpu.run(4)
        self.assertEqual(pixel(cpu, 4, 2), 1)

    def test_draw_reads_through_masked_i(self):
        cpu = make_cpu([0xAFFF, 0xD002])
        cpu.mem[0xFFF] = 0x80
        cpu.step()
        cpu.i = 0x1FFF  # beyond 12 bits: wraps to 0xFFF then 0x000
        cpu.step()
        self.assertEqual(pixel(cpu, 0, 0), 1)
        self.assertEqual(pixel(cpu, 0, 1), 1)  # font row 0 (0xF0)


# =========================================================================
#  Keypad: Ex9E ExA1 Fx0A
# =========================================================================

class TestKeys(unittest.TestCase):

    def test_skip_if_key(self):
        cpu = make_cpu([0x6107, 0xE19E])
        cpu.set_key(7, True)
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x206)

    def test_skip_if_not_key(self):
        cpu = make_cpu([0x6107, 0xE1A1])
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x206)
        cpu = make_cpu([0x6107, 0xE1A1])
        cpu.set_key(7, True)
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x204)

    def test_wait_key_blocks_until_press(self):
        cpu = make_cpu([0xF30A, 0x6001])
        cpu.step()
        self.assertEqual(cpu.key_wait_reg, 3)
        snapshot = (cpu.pc, list(cpu.v), cpu.cycle_count)
        for _ in range(10):
            self.assertFalse(cpu.step())
        self.assertEqual((cpu.pc, list(cpu.v), cpu.cycle_count), snapshot)
        cpu.set_key(0xB, False)          # release does nothing
        self.assertTrue(cpu.waiting)
        cpu.set_key(0xB, True)
        self.assertEqual(cpu.v[3], 0xB)
        self.assertFalse(cpu.waiting)
        self.assertTrue(cpu.step())
        self.assertEqual(cpu.v[0], 1)

    def test_wait_key_register_zero(self):
        cpu = make_cpu([0xF00A, 0x7101])
        cpu.step()
        self.assertTrue(cpu.waiting)
        self.assertFalse(cpu.step())
        cpu.set_key(5, True)
        self.assertEqual(cpu.v[0], 5)
        cpu.step()
        self.assertEqual(cpu.v[1], 1)

    def test_held_key_does_not_resolve_twice(self):
        cpu = make_cpu([0xF10A, 0xF20A])
        cpu.step()
        cpu.set_key(4, True)
        cpu.step()                       # second wait begins, key still held
        self.assertTrue(cpu.waiting)
        self.assertEqual(cpu.v[2], 0)
        cpu.set_key(4, False)
        cpu.set_key(9, True)
        self.assertEqual((cpu.v[1], cpu.v[2]), (4, 9))

    def test_repeated_down_event_is_not_a_press(self):
        cpu = make_cpu([0xF10A, 0x6201])
        cpu.set_key(4, True)
        cpu.step()
        cpu.set_key(4, True)             # auto-repeat of a key already down
        self.assertTrue(cpu.waiting)
        self.assertEqual(cpu.v[1], 0)
        self.assertFalse(cpu.step())
        cpu.set_key(4, False)
        cpu.set_key(4, True)
        self.assertFalse(cpu.waiting)
        self.assertEqual(cpu.v[1], 4)

    def test_timers_still_tick_while_waiting(self):
        cpu = make_cpu([0xF00A])
        cpu.dt = 3
        cpu.step()
        cpu.tick_timers()
        self.assertEqual(cpu.dt, 2)


# =========================================================================
#  Fx__: timers, I, BCD, register block transfer
# =========================================================================

class TestMisc(unittest.TestCase):

    def test_delay_timer_round_trip(self):
        cpu = make_cpu([0x6A30, 0xFA15, 0xFB07])
        cpu.run(2)
        self.assertEqual(cpu.dt, 0x30)
        cpu.tick_timers()
        cpu.step()
        self.assertEqual(cpu.v[0xB], 0x2F)

    def test_sound_timer_write(self):
        cpu = make_cpu([0x6A02, 0xFA18])
        cpu.run(2)
        self.assertEqual(cpu.st, 2)

    def test_add_i_not_masked(self):
        cpu = make_cpu([0xAFFF, 0x61FF, 0xF11E])
        cpu.run(3)
        self.assertEqual(cpu.i, 0xFFF + 0xFF)
        self.assertEqual(cpu.v[0xF], 0)

    def test_font_addr(self):
        for d in range(16):
            cpu = make_cpu([0x6000 | d, 0xF029])
            cpu.run(2)
            self.assertEqual(cpu.i, d * 5)
            self.assertEqual(bytes(cpu.mem[cpu.i:cpu.i + 5]),
                             FONT[d * 5:d * 5 + 5])

    def test_bcd(self):
        for val, digits in ((0, (0, 0, 0)), (7, (0, 0, 7)),
                            (42, (0, 4, 2)), (255, (2, 5, 5)), (190, (1, 9, 0))):
            cpu = make_cpu([0x6000 | val, 0xA300, 0xF033])
            cpu.run(3)
            self.assertEqual(tuple(cpu.mem[0x300:0x303]), digits)

    def test_store_and_load_registers(self):
        cpu = make_cpu([0xA400, 0xF355, 0x6000, 0x6300, 0xF265])
        for r in range(16):
            cpu.v[r] = 0x10 + r
        cpu.run(2)
        self.assertEqual(list(cpu.mem[0x400:0x405]), [0x10, 0x11, 0x12, 0x13, 0])
        self.assertEqual(cpu.i, 0x400)   # I is left unchanged
        cpu.run(3)
        self.assertEqual(cpu.v[:4], [0x10, 0x11, 0x12, 0])

    def test_store_register_zero_only(self):
        cpu = make_cpu([0xA400, 0xF055])
        cpu.v[0], cpu.v[1] = 9, 8
        cpu.run(2)
        self.assertEqual(list(cpu.mem[0x400:0x402]), [9, 0])


# =========================================================================
#  Timers and beep edge
# =========================================================================

class TestTimers(unittest.TestCase):

    def test_no_underflow(self):
        cpu = make_cpu()
        cpu.tick_timers()
        self.assertEqual((cpu.dt, cpu.st), (0, 0))
        self.assertFalse(cpu.beep_flag)

    def test_beep_on_one_to_zero(self):
        cpu = make_cpu()
        cpu.st = 1
        cpu.tick_timers()
        self.assertEqual(cpu.st, 0)
        self.assertTrue(cpu.beep_flag)
        cpu.beep_flag = False
        cpu.tick_timers()
        self.assertFalse(cpu.beep_flag)

    def test_beep_only_at_end(self):
        cpu = make_cpu()
        cpu.st = 3
        cpu.tick_timers()
        cpu.tick_timers()
        self.assertFalse(cpu.beep_flag)
        cpu.tick_timers()
        self.assertTrue(cpu.beep_flag)

    def test_delay_counts_down(self):
        cpu = make_cpu()
        cpu.dt = 2
        cpu.tick_timers()
        cpu.tick_timers()
        cpu.tick_timers()
        self.assertEqual(cpu.dt, 0)
        self.assertFalse(cpu.beep_flag)


# =========================================================================
#  Wraparound diagnostics
# =========================================================================

class TestWraparound(unittest.TestCase):

    def test_stack_overflow_wraps_and_is_counted(self):
        cpu = make_cpu([0x2200])  # calls itself forever
        with self.assertLogs("chip8", level="WARNING"):
            cpu.run(17)
        self.assertEqual(cpu.stack_wraps, 1)
        self.assertEqual(cpu.sp, 14)
        self.assertEqual(cpu.pc, 0x200)

    def test_stack_underflow_wraps(self):
        cpu = make_cpu([0x00EE])
        with self.assertLogs("chip8", level="WARNING"):
            cpu.step()
        self.assertEqual(cpu.stack_wraps, 1)
        self.assertEqual(cpu.sp, 0)
        self.assertEqual(cpu.pc, 0)  # stack[0] was never written

    def test_pc_wraps_at_end_of_memory(self):
        cpu = make_cpu([0x1FFE])
        cpu.step()
        cpu.mem[0xFFE] = 0x61
        cpu.mem[0xFFF] = 0x23
        with self.assertLogs("chip8", level="WARNING"):
            cpu.step()
        self.assertEqual(cpu.pc, 0x000)
        self.assertEqual(cpu.v[1], 0x23)
        self.assertEqual(cpu.pc_wraps, 1)

    def test_jump_v0_past_end_wraps_pc(self):
        cpu = make_cpu([0x60FF, 0xBFFF])
        with self.assertLogs("chip8", level="WARNING"):
            cpu.run(2)
        self.assertEqual(cpu.pc, 0x0FE)
        self.assertEqual(cpu.pc_wraps, 1)
        self.assertIn("PC=0x0fe", cpu.dump_regs().lower())

    def test_skip_at_end_of_memory_wraps_pc(self):
        cpu = make_cpu([0x1FFC])
        cpu.step()
        cpu.mem[0xFFC:0xFFE] = b"\x30\x00"   # SE V0, 0 -> always skips
        with self.assertLogs("chip8", level="WARNING"):
            cpu.step()
        self.assertEqual(cpu.pc, 0x000)
        self.assertEqual(cpu.pc_wraps, 1)

    def test_run_stops_when_waiting(self):
        cpu = make_cpu([0x6001, 0xF10A, 0x6002])
        self.assertEqual(cpu.run(100), 2)
        self.assertTrue(cpu.waiting)

    def test_dump_regs(self):
        cpu = make_cpu([0xF50A])
        cpu.step()
        text = cpu.dump_regs()
        self.assertIn("PC=0x202", text)
        self.assertIn("WAIT=V5", text)


if __name__ == "__main__":
    unittest.main()
