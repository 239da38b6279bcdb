# rbergomi/cli.py
"""
Command line entry point.

    rbergomi                              built-in parameters, table on stdout
    rbergomi N M path out_file in_stem    parameters from <path>.<in_stem>X.txt,
                                          table written to <path><out_file>

Exit codes: 5 wrong argument count, 17 empty parameter array, 18 arrays of
different length, 1 file could not be read or written.
"""

from __future__ import annotations
import argparse
import logging
import sys
import time

from rbergomi.config import DEFAULT_PARAMETERS, ENTROPY_KINDS, FFT_BACKEND_NAMES, PAYOFF_MODES, PricingConfig, setup_logging
from rbergomi.driver import price_grid
from rbergomi.errors import ArgumentCountError, ConfigurationError, FileAccessError, WorkerError
from rbergomi.grid import make_grid
from rbergomi.io import read_parameters, write_table


logger = logging.getLogger(__name__)

USAGE = "rbergomi [options] [N M path out_file in_name]"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rbergomi", usage=USAGE,
                                description="Monte Carlo prices and implied vols of European calls under rough Bergomi.")
    p.add_argument("positional", nargs="*", metavar="ARG",
                   help="either nothing or: N M path out_file in_name")
    p.add_argument("--workers", type=int, default=None, help="worker threads (default: RBERGOMI_NUM_WORKERS or CPU count)")
    p.add_argument("--seed", type=_seed, default=None, help="master seed: an integer or comma-separated integers")
    p.add_argument("--batch-size", type=int, default=None, help="samples per vectorized block")
    p.add_argument("--payoff", choices=PAYOFF_MODES, default=None)
    p.add_argument("--entropy", choices=ENTROPY_KINDS, default=None)
    p.add_argument("--fft-backend", choices=FFT_BACKEND_NAMES, default=None)
    p.add_argument("--unordered", action="store_true", help="keep input order instead of sorting the grid")
    p.add_argument("--log-level", default="WARNING")
    return p


def _seed(text):
    try:
        values = [int(s) for s in text.split(",") if s.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid seed {text!r}") from None
    if not values:
        raise argparse.ArgumentTypeError("empty seed")
    return values[0] if len(values) == 1 else values


def _parse_positional(values):
    if len(values) not in (0, 5):
        raise ArgumentCountError(f"Wrong number of arguments.\nUsage: {USAGE}")
    if not values:
        return None
    try:
        N, M = int(values[0]), int(values[1])
    except ValueError:
        raise ArgumentCountError(f"N and M must be integers, got {values[0]!r} {values[1]!r}") from None
    return dict(N=N, M=M, path=values[2], out_name=values[3], in_name=values[4])


def run(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        pos = _parse_positional(args.positional)
        config = PricingConfig()
        if pos is None:
            params = {k: list(v) for k, v in DEFAULT_PARAMETERS.items()}
        else:
            config = config.with_overrides(n_steps=pos["N"], n_samples=pos["M"])
            params = read_parameters(pos["path"], pos["in_name"])
        config = config.with_overrides(
            workers=args.workers, seed=args.seed, batch_size=args.batch_size, payoff=args.payoff,
            entropy=args.entropy, fft_backend=args.fft_backend,
            ordered=False if args.unordered else None,
        ).validate()

        grid = make_grid(**params, ordered=config.ordered)
        t0 = time.perf_counter()
        result = price_grid(grid, config)
        elapsed_ms = int(round((time.perf_counter() - t0) * 1000.0))

        if pos is None:
            write_table(result)
        else:
            write_table(result, pos["path"] + pos["out_name"])
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_code
    except FileAccessError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_code
    except (ValueError, WorkerError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    n_failed = int(result.iv_failed.sum())
    if n_failed:
        logger.warning("%d of %d implied vols did not converge", n_failed, len(result))
    print(f"Time elapsed: {elapsed_ms}ms.")
    return 0


def main(argv=None) -> None:
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
