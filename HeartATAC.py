import argparse
import sys

from wrapper.atac_wrapper import STAGES, atac_wrapper


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the heart snATAC-seq analysis for one sample.")

    parser.add_argument("-s", "--sample", type=str, required=True,
                        help="Sample id from the sample table (e.g. CK166)")
    parser.add_argument("-o", "--output_directory", type=str, default=None,
                        help="Output root directory (default: output_dir from the config)")
    parser.add_argument("-c", "--config", type=str, default=None,
                        help="JSON file overriding the default parameters")
    parser.add_argument("--stages", type=str, nargs="+", choices=STAGES, default=None,
                        help="Stages to run (default: all)")
    parser.add_argument("--init", action="store_true",
                        help="Ignore saved progress and rerun the requested stages")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Suppress progress messages")

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    try:
        atac_wrapper(
            sample=args.sample,
            output_dir=args.output_directory,
            config_path=args.config,
            stages=args.stages,
            initialization=args.init,
            verbose=False if args.quiet else None,
        )
    except (KeyError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
