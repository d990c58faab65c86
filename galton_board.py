from __future__ import annotations
import argparse
import logging
import random
import secrets
import sys
import time
from concurrent.futures import (Executor, ProcessPoolExecutor,
                                ThreadPoolExecutor, as_completed)
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import (Any, Callable, Final, List, Optional, Protocol, Sequence,
                    Tuple, TypeAlias)
from PIL import Image, ImageDraw

Bin: TypeAlias = int
Frequency: TypeAlias = int
Histogram: TypeAlias = Tuple[Frequency, ...]
Color: TypeAlias = Tuple[int, int, int, int]

SEED_BITS: Final[int] = 64


class GaltonBoardError(Exception):
    pass


class ConfigError(GaltonBoardError, ValueError):
    pass


class ImageSaveError(GaltonBoardError, OSError):
    pass


def _validate_positive_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"'{name}' must be a positive integer, got {value}.")


def _validate_non_negative_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ConfigError(f"'{name}' must be a non-negative integer, got {value}.")


def _validate_colors(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if (not isinstance(value, tuple) or len(value) != 4
                or not all(isinstance(c, int) and 0 <= c <= 255 for c in value)):
            raise ConfigError(f"'{name}' must be an RGBA tuple of four 0-255 ints, got {value}.")


@dataclass(frozen=True)
class BoardConfig:
    BOARD_WIDTH: Final[int] = 800
    BOARD_HEIGHT: Final[int] = 400
    NUM_BALLS: Final[int] = 100_000
    NUM_WORKERS: Final[int] = 16
    IMAGE_PATH: Final[str] = "galton_board.png"
    BAR_COLOR: Final[Color] = (220, 20, 60, 255)
    BACKGROUND_COLOR: Final[Color] = (0, 0, 0, 0)
    USE_PROCESSES: Final[bool] = False
    LOG_FORMAT: Final[str] = "%(levelname)s: %(message)s"

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("BOARD_WIDTH", self.BOARD_WIDTH),
            ("BOARD_HEIGHT", self.BOARD_HEIGHT),
            ("NUM_WORKERS", self.NUM_WORKERS),
        )
        _validate_non_negative_ints(("NUM_BALLS", self.NUM_BALLS))
        _validate_colors(
            ("BAR_COLOR", self.BAR_COLOR),
            ("BACKGROUND_COLOR", self.BACKGROUND_COLOR),
        )


class BitSource(Protocol):
    def getrandbits(self, k: int) -> int: ...


RngFactory: TypeAlias = Callable[[int], BitSource]


class SeedSource:
    """Hands out one independent seed per worker.

    With ``base_seed`` set, worker ``i`` gets ``base_seed + i`` so runs are
    reproducible. Otherwise seeds come from the OS CSPRNG, falling back to
    the clock offset by the worker index when the entropy source fails.
    ``base_seed`` must be non-negative; ``random.Random`` seeds from the
    absolute value, so negative bases would repeat streams across workers.
    """

    def __init__(self, base_seed: Optional[int] = None) -> None:
        if base_seed is not None and base_seed < 0:
            raise ConfigError(f"'base_seed' must be a non-negative integer, got {base_seed}.")
        self.base_seed = base_seed

    def seed_for(self, worker_index: int) -> int:
        if self.base_seed is not None:
            return self.base_seed + worker_index
        try:
            return secrets.randbits(SEED_BITS)
        except (OSError, NotImplementedError) as e:
            logging.warning(f"Could not generate a cryptographic seed for worker "
                            f"{worker_index}, falling back to time-based seed: {e}.")
            return time.time_ns() + worker_index


def drop_ball(width: int, height: int, rng: BitSource) -> Bin:
    pos = width // 2
    for _ in range(height):
        pos += 1 if rng.getrandbits(1) else -1
    return max(0, min(width - 1, pos))


def _drop_balls(width: int, height: int, count: int, rng: BitSource) -> List[Bin]:
    return [drop_ball(width, height, rng) for _ in range(count)]


def partition_trials(num_balls: int, num_workers: int) -> List[int]:
    share, extra = divmod(num_balls, num_workers)
    return [share + (1 if i < extra else 0) for i in range(num_workers)]


@dataclass
class Simulator:
    config: BoardConfig = field(default_factory=BoardConfig)
    seed_source: SeedSource = field(default_factory=SeedSource)
    rng_factory: Optional[RngFactory] = None
    elapsed: float = field(init=False, default=0.0)

    def simulate(self) -> Histogram:
        cfg = self.config
        counts = [0] * cfg.BOARD_WIDTH
        shares = [(i, n) for i, n in
                  enumerate(partition_trials(cfg.NUM_BALLS, cfg.NUM_WORKERS)) if n]
        start = time.perf_counter()
        if not shares:
            logging.info("Simulation skipped (0 balls).")
        else:
            self._collect(shares, counts)
        self.elapsed = time.perf_counter() - start
        return tuple(counts)

    def _collect(self, shares: Sequence[Tuple[int, int]], counts: List[Frequency]) -> None:
        cfg = self.config
        with self._executor(len(shares)) as executor:
            futures = {
                executor.submit(_drop_balls, cfg.BOARD_WIDTH, cfg.BOARD_HEIGHT,
                                n, self._make_rng(i)): i
                for i, n in shares
            }
            for done, future in enumerate(as_completed(futures), start=1):
                for b in future.result():
                    counts[b] += 1
                logging.info(f"Worker {futures[future]} finished ({done}/{len(futures)}).")

    def _make_rng(self, worker_index: int) -> BitSource:
        if self.rng_factory is not None:
            return self.rng_factory(worker_index)
        return random.Random(self.seed_source.seed_for(worker_index))

    def _executor(self, max_workers: int) -> Executor:
        pool = ProcessPoolExecutor if self.config.USE_PROCESSES else ThreadPoolExecutor
        return pool(max_workers=max_workers)


@dataclass(frozen=True)
class Renderer:
    config: BoardConfig = field(default_factory=BoardConfig)

    def render(self, histogram: Sequence[Frequency]) -> Image.Image:
        cfg = self.config
        image = Image.new("RGBA", (cfg.BOARD_WIDTH, cfg.BOARD_HEIGHT),
                          cfg.BACKGROUND_COLOR)
        m = max(histogram, default=0)
        if m:
            self._draw_all_bars(ImageDraw.Draw(image), histogram, m)
        return image

    def _draw_all_bars(self, draw: ImageDraw.ImageDraw,
                       histogram: Sequence[Frequency], max_count: int) -> None:
        for i, c in enumerate(histogram[:self.config.BOARD_WIDTH]):
            self._draw_bar(draw, i, c, max_count)

    def _draw_bar(self, draw: ImageDraw.ImageDraw, i: int, c: int, mx: int) -> None:
        h = self.config.BOARD_HEIGHT
        bh = int(c / mx * h)
        if bh <= 0:
            return
        draw.rectangle([i, h - bh, i, h - 1], fill=self.config.BAR_COLOR)


def save_image(image: Image.Image, path: str | Path) -> Path:
    """Write ``image`` as PNG, leaving nothing behind on failure."""
    out = Path(path).resolve()
    tmp = out.with_name(out.stem + ".tmp" + out.suffix)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        image.save(tmp, format="PNG")
        tmp.replace(out)
    except (OSError, ValueError) as e:
        if tmp.exists():
            tmp.unlink()
        raise ImageSaveError(f"Failed to save image to {out}: {e}") from e
    return out


def run_simulation(config: BoardConfig, seed_source: Optional[SeedSource] = None) -> Path:
    sim = Simulator(config, seed_source or SeedSource())
    histogram = sim.simulate()
    out = save_image(Renderer(config).render(histogram), config.IMAGE_PATH)
    print(f"Galton Board simulation completed in {sim.elapsed:.3f}s. Image saved to {out}")
    return out


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Simulate a Galton board and save its histogram as PNG.")
    p.add_argument("--width", type=int, help="number of bins (image width)")
    p.add_argument("--height", type=int, help="rows of pegs (image height)")
    p.add_argument("--balls", type=int, help="number of balls dropped")
    p.add_argument("--workers", type=int, help="number of parallel workers")
    p.add_argument("--output", help="output PNG path")
    p.add_argument("--processes", action="store_true", help="use worker processes instead of threads")
    p.add_argument("--seed", type=int, help="base seed for a reproducible run")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> BoardConfig:
    overrides = {
        "BOARD_WIDTH": args.width,
        "BOARD_HEIGHT": args.height,
        "NUM_BALLS": args.balls,
        "NUM_WORKERS": args.workers,
        "IMAGE_PATH": args.output,
        "USE_PROCESSES": args.processes or None,
    }
    return replace(BoardConfig(), **{k: v for k, v in overrides.items() if v is not None})


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format=BoardConfig.LOG_FORMAT)
    args = _parse_args(argv)
    try:
        run_simulation(build_config(args), SeedSource(args.seed))
    except ConfigError as e:
        logging.error(f"Invalid configuration: {e}")
        return 2
    except ImageSaveError as e:
        logging.error(f"An error occurred during the simulation: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
