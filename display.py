"""
CHIP-8 Framebuffer Display
===========================
Renders the 64x32 framebuffer from a Chip8System in a pygame window,
maps the physical keyboard onto the 16-key hex keypad, and plays a tone
when the sound timer runs out.  Runs in a background thread so the
frame loop in cli.py keeps its own pacing.

Keypad layout (physical key -> keypad index):

    1 2 3 4        0 1 2 C
    Q W E R   ->   3 4 5 D
    A S D F        6 7 8 E
    Z X C V        A 9 B F

Usage (programmatic):
    from display import FramebufferDisplay
    disp = FramebufferDisplay(sys_emu, scale=10)
    disp.start()       # launches background thread
    ...                # call sys_emu.run_frame() at 60 Hz
    disp.stop()        # clean shutdown

Usage (CLI):
    python cli.py pong.ch8 --colour F7A8B8FF
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np

from chip8 import SCREEN_W, SCREEN_H
from system import colour_rgb

if TYPE_CHECKING:
    from system import Chip8System

# Physical key at position i drives keypad index i
KEYPAD_LAYOUT = "123qweasdxzc4rfv"

BACKGROUND = (0, 0, 0)
TONE_HZ = 440
SAMPLE_RATE = 44100
BEEP_SECONDS = 0.1


def frame_to_rgb(frame: bytes | bytearray, colour: int) -> np.ndarray:
    """Map a row-major 0/1 frame to a (W, H, 3) uint8 array for surfarray."""
    pix = np.frombuffer(bytes(frame), dtype=np.uint8).reshape(SCREEN_H, SCREEN_W)
    rgb = np.zeros((SCREEN_W, SCREEN_H, 3), dtype=np.uint8)
    rgb[:, :] = BACKGROUND
    rgb[pix.T.astype(bool)] = colour_rgb(colour)
    return rgb


def square_wave(tone_hz: int = TONE_HZ, seconds: float = BEEP_SECONDS,
                sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Signed 16-bit mono square wave for pygame.mixer.Sound."""
    t = np.arange(int(sample_rate * seconds))
    wave = ((t * tone_hz * 2 / sample_rate) % 2 >= 1).astype(np.float32) * 2 - 1
    return (wave * 32767).astype(np.int16)


class FramebufferDisplay:
    """Background-threaded pygame window for a Chip8System."""

    def __init__(self, sys_emu: "Chip8System", scale: int = 10,
                 title: str = "CHIP-8"):
        self.sys = sys_emu
        self.scale = max(1, scale)
        self.title = title
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._started = threading.Event()
        self.fps = sys_emu.config.frame_rate
        self._key_map = {ord(ch): i for i, ch in enumerate(KEYPAD_LAYOUT)}
        self._sound = None

    # -- public API -------------------------------------------------------

    def start(self):
        """Start the display thread.  Returns once the window is open."""
        self._stop_event.clear()
        self._started.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chip8-display")
        self._thread.start()
        self._started.wait(timeout=5.0)

    def stop(self):
        """Signal the display thread to shut down and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3.0)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- internals --------------------------------------------------------

    def _init_audio(self, pygame):
        try:
            pygame.mixer.pre_init(SAMPLE_RATE, -16, 1, 256)
            pygame.mixer.init()
        except pygame.error as e:
            print(f"[display] audio disabled: {e}")
            return
        self._sound = pygame.mixer.Sound(buffer=square_wave().tobytes())
        self._sound.set_volume(0.2)

    def handle_key(self, key: int, is_down: bool) -> bool:
        """Forward a physical key to the keypad.  Returns True if it mapped."""
        index = self._key_map.get(key)
        if index is None:
            return False
        self.sys.set_key(index, is_down)
        return True

    def _run(self):
        """Main display loop (runs in background thread)."""
        import pygame

        pygame.init()
        pygame.display.set_caption(self.title)
        win_w, win_h = SCREEN_W * self.scale, SCREEN_H * self.scale
        screen = pygame.display.set_mode((win_w, win_h), pygame.RESIZABLE)
        clock = pygame.time.Clock()
        fb_surface = pygame.Surface((SCREEN_W, SCREEN_H))
        self._init_audio(pygame)
        colour = self.sys.config.colour

        self._started.set()

        try:
            while not self._stop_event.is_set():
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self._stop_event.set()
                        return
                    elif event.type == pygame.VIDEORESIZE:
                        win_w, win_h = event.w, event.h
                        screen = pygame.display.set_mode(
                            (win_w, win_h), pygame.RESIZABLE)
                    elif event.type in (pygame.KEYDOWN, pygame.KEYUP):
                        if event.key == pygame.K_ESCAPE:
                            self._stop_event.set()
                            return
                        self.handle_key(event.key,
                                        event.type == pygame.KEYDOWN)

                frame, _ = self.sys.take_frame()
                pygame.surfarray.blit_array(fb_surface,
                                            frame_to_rgb(frame, colour))
                scaled = pygame.transform.scale(fb_surface, (win_w, win_h))
                screen.blit(scaled, (0, 0))
                pygame.display.flip()

                if self.sys.take_beep() and self._sound is not None:
                    self._sound.play()

                clock.tick(self.fps)

        except pygame.error as e:
            print(f"\n[display] error: {e}")
        finally:
            pygame.quit()


class HeadlessDisplay:
    """No-op display for testing and --frames runs: records frame snapshots."""

    def __init__(self, sys_emu: "Chip8System"):
        self.sys = sys_emu
        self.snapshots: list[np.ndarray] = []
        self.beeps = 0

    def start(self):
        pass

    def stop(self):
        pass

    def snapshot(self) -> np.ndarray:
        """Capture the current frame as a (32, 64) array of 0/1."""
        frame, _ = self.sys.take_frame()
        if self.sys.take_beep():
            self.beeps += 1
        pix = np.frombuffer(frame, dtype=np.uint8).reshape(SCREEN_H, SCREEN_W).copy()
        self.snapshots.append(pix)
        return pix

    def render_text(self, on: str = "#", off: str = ".") -> str:
        pix = self.snapshot()
        return "\n".join("".join(on if p else off for p in row) for row in pix)

    @property
    def running(self) -> bool:
        return False
