"""CLI entrypoint for spatial VB model fitting.

Usage:
    pysvb DATA_FILE OUTPUT_DIR [-o key=value ...]
"""

import argparse
import logging
import sys

from pysvb.errors import SpatialVBError
from pysvb.io.rundata import RunData
from pysvb.pipeline.run import run_inference
from pysvb.types import FileFormat


def _parse_option(text: str) -> tuple[str, str]:
    key, sep, value = text.partition("=")
    if not key:
        raise argparse.ArgumentTypeError(f"Bad option '{text}', expected key=value")
    return key.lstrip("-"), value if sep else ""


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Fit a forward model at every voxel with spatial VB.",
    )
    parser.add_argument(
        "data_file",
        help="Input .mat/.npz with 'data' (T x N), 'coords' (3 x N) and any image priors.",
    )
    parser.add_argument("output_dir", help="Directory for the result files.")
    parser.add_argument(
        "-o", "--option",
        action="append",
        type=_parse_option,
        default=[],
        metavar="KEY=VALUE",
        help="Inference option, e.g. -o param-spatial-priors=N+ or -o allow-bad-voxels.",
    )
    parser.add_argument(
        "--format",
        choices=[f.value for f in FileFormat if f is not FileFormat.AUTO],
        default=FileFormat.MAT_V5.value,
        help="Output file format (default: mat_v5).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        rundata = RunData.from_file(args.data_file, options=dict(args.option))
        result = run_inference(rundata, args.output_dir, fmt=FileFormat(args.format))
    except (FileNotFoundError, SpatialVBError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"Fitted {result.num_voxels} voxels in {result.iterations} iterations "
          f"({result.state.value}); results in {args.output_dir}")


if __name__ == "__main__":
    main()
