"""Command-line front end: build and run one registered kernel.

Usage:
    kernel-runner --kernel-key vector_add --kernel-sources-dir kernels \\
        --length 1024 -n 3 -t

Options are parsed in two passes. The first pass takes the kernel-independent
options and determines the kernel key; the second takes the options the
kernel's adapter declares: one per buffer (a filename), one per scalar
argument (its value) and one per preprocessor definition (its value).
Unrecognized options are reported and otherwise ignored.

Exit status is 0 on success (including --help and --list-kernels) and 1 on
any failure.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from gpu_runtime.buffer_io import check_overwrite, maybe_prepend_base_dir, write_buffer, write_text
from gpu_runtime.context import ExecutionContext
from gpu_runtime.errors import CompilationError, ConfigurationError, KernelRunnerError
from gpu_runtime.launch_config import Dimensions, LaunchConfigComponents, normalize_dimensions
from gpu_runtime.options import SUPPORTED_LANGUAGE_STANDARDS, RunOptions, resolve_ecosystem
from gpu_runtime.profiler import profile
from kernel_adapters import can_produce_adapter, produce_adapter, registered_keys
from kernel_adapters.adapter import KernelAdapter, ParameterDirection

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV_VAR = "KERNEL_RUNNER_LOG_LEVEL"
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser raising ConfigurationError instead of exiting."""

    def error(self, message):
        raise ConfigurationError(f"{self.prog}: {message}")


def _dimensions(text: str) -> Dimensions:
    try:
        values = [int(v) for v in text.split(",")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid dimensions '{text}'") from None
    try:
        return normalize_dimensions(values)
    except ConfigurationError as err:
        raise argparse.ArgumentTypeError(str(err)) from None


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def build_generic_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="kernel-runner",
        description="Build and run a single GPU kernel, with CUDA or OpenCL",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("-h", "--help", action="store_true", help="Print usage information and exit")
    parser.add_argument(
        "-l",
        "--log-level",
        default=os.environ.get(LOG_LEVEL_ENV_VAR, "warning"),
        help=f"Log level: one of {', '.join(LOG_LEVELS)} (default: ${LOG_LEVEL_ENV_VAR} or warning)",
    )
    parser.add_argument("-L", "--list-kernels", action="store_true", help="List the registered kernel keys and exit")

    kernel = parser.add_argument_group("Kernel selection")
    kernel.add_argument("-K", "--kernel-key", help="Key of the registered kernel adapter")
    kernel.add_argument("-k", "--kernel-function", help="Name of the kernel function in the source")
    kernel.add_argument("-s", "--kernel-source", help="Kernel source file (default: <key>.cu or <key>.cl)")
    kernel.add_argument("--kernel-sources-dir", default=".", help="Base directory for kernel sources")

    platform = parser.add_argument_group("Execution ecosystem")
    platform.add_argument("--cuda", action=argparse.BooleanOptionalAction, default=None, help="Use CUDA (the default)")
    platform.add_argument("--opencl", action=argparse.BooleanOptionalAction, default=None, help="Use OpenCL")
    platform.add_argument("-p", "--platform-id", type=int, default=None, help="OpenCL platform index")
    platform.add_argument("-d", "--device", type=int, default=0, help="Device index (default: 0)")

    build = parser.add_argument_group("Compilation")
    build.add_argument(
        "-D", "--define", action="append", default=[], metavar="DEFINITION",
        help="Preprocessor definition: NAME or NAME=VALUE",
    )
    build.add_argument("-I", "--include-path", action="append", default=[], help="Additional include directory")
    build.add_argument("-i", "--include", action="append", default=[], help="File to include before the source")
    build.add_argument("-G", "--debug-mode", action="store_true", help="Compile the kernel in debug mode")
    build.add_argument(
        "--generate-line-info",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Generate source line information",
    )
    build.add_argument(
        "--language-standard",
        help=f"Language standard for the kernel source: one of {', '.join(SUPPORTED_LANGUAGE_STANDARDS)}",
    )
    build.add_argument("-c", "--compile-only", action="store_true", help="Build the kernel, but do not run it")
    build.add_argument(
        "-P", "--write-ir", "--write-ptx", dest="write_ir", action="store_true",
        help="Write the intermediate representation (PTX, or the OpenCL program binary) to a file",
    )
    build.add_argument(
        "--ir-output-file", "--ptx-output-file", dest="ir_output_file",
        help="File for the intermediate representation (default: <function>.ptx or <function>.clbin)",
    )

    launch = parser.add_argument_group("Launch configuration")
    launch.add_argument("-b", "--block-dimensions", type=_dimensions, help="Block dimensions in threads, e.g. 256,1,1")
    launch.add_argument("-g", "--grid-dimensions", type=_dimensions, help="Grid dimensions in blocks")
    launch.add_argument("-o", "--overall-grid-dimensions", type=_dimensions, help="Grid dimensions in threads")
    launch.add_argument("-S", "--dynamic-shared-memory-size", type=int, help="Dynamic shared memory, in bytes")

    run = parser.add_argument_group("Execution")
    run.add_argument("-n", "--num-runs", type=int, default=1, help="Number of times to run the kernel (default: 1)")
    run.add_argument("-z", "--zero-output-buffers", action="store_true", help="Zero output buffers before each run")
    run.add_argument("-t", "--time-execution", action="store_true", help="Time each kernel run")

    files = parser.add_argument_group("Buffer files")
    files.add_argument("--input-buffer-dir", default=".", help="Base directory for input buffer files")
    files.add_argument("--output-buffer-dir", default=".", help="Base directory for output buffer files")
    files.add_argument(
        "-w", "--write-output", action=argparse.BooleanOptionalAction, default=True,
        help="Write output buffers to files",
    )
    files.add_argument("-W", "--overwrite-allowed", action="store_true", help="Allow overwriting existing files")
    return parser


def build_kernel_parser(adapter: KernelAdapter) -> argparse.ArgumentParser:
    """Parser for the options declared by ``adapter``."""
    parser = _ArgumentParser(
        prog=f"kernel-runner --kernel-key {adapter.key}",
        description=f"Options for kernel '{adapter.key}'",
        add_help=False,
        allow_abbrev=False,
    )
    titles = {
        ParameterDirection.IN: "Input buffer filenames",
        ParameterDirection.OUT: "Output buffer filenames",
        ParameterDirection.INOUT: "In-out buffer filenames (results go to <name>.out)",
    }
    try:
        for direction, title in titles.items():
            names = adapter.buffer_names(direction)
            if not names:
                continue
            group = parser.add_argument_group(title)
            for name in names:
                details = adapter.parameter(name)
                default = f"{name}.out" if direction is ParameterDirection.OUT else name
                group.add_argument(
                    f"--{name}", dest=f"buffer:{name}", metavar="FILE",
                    help=f"{details.description or name} (default: {default})",
                )

        scalars = adapter.scalar_parameter_details()
        if scalars:
            group = parser.add_argument_group("Scalar arguments")
            for details in scalars:
                suffix = "" if details.required else " (optional)"
                group.add_argument(
                    f"--{details.name}", dest=f"scalar:{details.name}", metavar="VALUE",
                    help=f"{details.description or details.name}{suffix}",
                )

        definitions = adapter.preprocessor_definition_details()
        if definitions:
            group = parser.add_argument_group("Preprocessor definitions")
            for details in definitions:
                group.add_argument(
                    f"--{details.name}", dest=f"define:{details.name}", metavar="VALUE",
                    help=details.description or details.name,
                )
    except argparse.ArgumentError as err:
        raise ConfigurationError(f"Kernel adapter '{adapter.key}' declares clashing options: {err}") from err
    return parser


# ---------------------------------------------------------------------------
# Option resolution
# ---------------------------------------------------------------------------


def configure_logging(level_name: str) -> None:
    level_name = level_name.lower()
    if level_name not in LOG_LEVELS:
        raise ConfigurationError(f"Invalid log level '{level_name}'; use one of {', '.join(LOG_LEVELS)}")
    level = getattr(logging, level_name.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # basicConfig is a no-op once the root logger has handlers
    logging.getLogger().setLevel(level)
    logger.debug("Setting log level to %s", level_name)


def infer_kernel_identity(args: argparse.Namespace) -> tuple[str | None, str | None]:
    """Determine (key, function name) from whichever of key/function/source was given."""
    key = args.kernel_key
    function_name = args.kernel_function
    source = Path(args.kernel_source) if args.kernel_source else None

    if key is not None and not key:
        raise ConfigurationError("Kernel key may not be empty")
    if function_name is not None and not function_name.isidentifier():
        raise ConfigurationError(f"Invalid kernel function name '{function_name}'")

    if function_name is None and source is not None and key is None:
        if source.stem.isidentifier():
            function_name = source.stem
            logger.info("Inferring the kernel function name from the kernel source filename: '%s'", function_name)

    if key is None:
        if source is not None:
            key = source.stem
        elif function_name is not None:
            key = function_name
            logger.info("Inferring the kernel key from the kernel function name: '%s'", key)
    if key is not None:
        logger.debug("Using kernel key: %s", key)
    return key, function_name


def _existing_dir(path: str, what: str) -> Path:
    result = Path(path)
    if not result.is_dir():
        raise ConfigurationError(f"{what} directory {result} does not exist")
    return result


def build_run_options(
    args: argparse.Namespace,
    kernel_args: argparse.Namespace,
    adapter: KernelAdapter,
    key: str,
    function_name: str | None,
) -> RunOptions:
    values = vars(kernel_args)

    def given(prefix: str) -> dict[str, str]:
        return {
            dest.split(":", 1)[1]: value
            for dest, value in values.items()
            if dest.startswith(prefix + ":") and value is not None
        }

    buffer_files = given("buffer")
    readable = set(adapter.buffer_names(ParameterDirection.IN, ParameterDirection.INOUT))
    input_filenames = {name: f for name, f in buffer_files.items() if name in readable}
    output_filenames = {name: f for name, f in buffer_files.items() if name not in readable}

    ir_output_file = Path(args.ir_output_file) if args.ir_output_file else None
    if ir_output_file is not None and args.write_ir:
        check_overwrite(ir_output_file, args.overwrite_allowed, "intermediate representation")

    return RunOptions(
        kernel_key=key,
        ecosystem=resolve_ecosystem(args.cuda, args.opencl),
        device_id=args.device,
        platform_id=args.platform_id,
        num_runs=args.num_runs,
        kernel_function_name=function_name,
        kernel_source_file=Path(args.kernel_source) if args.kernel_source else None,
        kernel_sources_dir=_existing_dir(args.kernel_sources_dir, "Kernel sources"),
        input_buffer_dir=_existing_dir(args.input_buffer_dir, "Input buffer"),
        output_buffer_dir=_existing_dir(args.output_buffer_dir, "Output buffer"),
        input_filenames=input_filenames,
        output_filenames=output_filenames,
        scalar_arguments=given("scalar"),
        preprocessor_definitions=list(args.define),
        preprocessor_value_definitions=given("define"),
        include_dirs=list(args.include_path),
        preinclude_files=list(args.include),
        language_standard=args.language_standard,
        compile_in_debug_mode=args.debug_mode,
        generate_line_info=args.generate_line_info,
        forced_launch_config=LaunchConfigComponents(
            block_dimensions=args.block_dimensions,
            grid_dimensions=args.grid_dimensions,
            overall_grid_dimensions=args.overall_grid_dimensions,
            dynamic_shared_memory_size=args.dynamic_shared_memory_size,
        ),
        zero_output_buffers=args.zero_output_buffers,
        time_execution=args.time_execution,
        compile_only=args.compile_only,
        write_output_buffers=args.write_output,
        write_ir=args.write_ir,
        ir_output_file=ir_output_file,
        overwrite_allowed=args.overwrite_allowed,
    )


def output_buffer_paths(options: RunOptions, adapter: KernelAdapter) -> dict[str, Path]:
    """Where each output and inout buffer is written."""
    paths: dict[str, Path] = {}
    for name in adapter.buffer_names(ParameterDirection.OUT):
        filename = options.output_filenames.get(name, f"{name}.out")
        paths[name] = maybe_prepend_base_dir(options.output_buffer_dir, filename)
    for name in adapter.buffer_names(ParameterDirection.INOUT):
        paths[name] = Path(options.output_buffer_dir) / f"{name}.out"
    return paths


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


def write_intermediate_representation(context: ExecutionContext) -> Path:
    options = context.options
    path = options.ir_output_file or Path(f"{context.kernel_function_name}.{context.backend.ir_file_extension}")
    if not context.intermediate_representation:
        logger.warning("The compiler produced an empty intermediate representation")
    write_text(path, context.intermediate_representation, options.overwrite_allowed)
    logger.info("Wrote the intermediate representation to %s", path)
    return path


def run_kernel(options: RunOptions, adapter: KernelAdapter) -> None:
    output_paths: dict[str, Path] = {}
    if options.write_output_buffers and not options.compile_only:
        output_paths = output_buffer_paths(options, adapter)
        for name, path in output_paths.items():
            check_overwrite(path, options.overwrite_allowed, f"contents of output buffer {name}")

    with ExecutionContext(options) as context:
        context.build()
        if options.write_ir:
            write_intermediate_representation(context)
        if options.compile_only:
            logger.info("Compilation-only mode; not running the kernel")
            return
        outputs = context.execute()
        timings = context.run_timings

    if options.time_execution:
        logger.info("Kernel execution times: %s", profile(timings).summary())

    for name, path in output_paths.items():
        write_buffer(path, outputs[name], options.overwrite_allowed)
        logger.info("Wrote output buffer %s to %s", name, path)


def _main(argv: list[str]) -> int:
    generic = build_generic_parser()
    args, remaining = generic.parse_known_args(argv)
    configure_logging(args.log_level)

    if args.list_kernels:
        print("\n".join(registered_keys()))
        return 0

    key, function_name = infer_kernel_identity(args)
    if key is None:
        if args.help:
            print(generic.format_help())
            return 0
        raise ConfigurationError(
            "You must specify a kernel key, or otherwise provide enough information to determine "
            "the key, filename and name of kernel function"
        )
    if not can_produce_adapter(key):
        raise ConfigurationError(
            f"No kernel adapter is registered for key '{key}'; use --list-kernels to see the available ones"
        )
    adapter = produce_adapter(key)
    kernel_parser = build_kernel_parser(adapter)
    if args.help:
        print(generic.format_help())
        print(kernel_parser.format_help())
        return 0

    kernel_args, unrecognized = kernel_parser.parse_known_args(remaining)
    if unrecognized:
        logger.warning("Ignoring unrecognized command-line arguments: %s", " ".join(unrecognized))

    options = build_run_options(args, kernel_args, adapter, key, function_name)
    run_kernel(options, adapter)
    return 0


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    try:
        return _main(argv)
    except ConfigurationError as err:
        logger.critical("%s (use --help for usage information)", err)
    except CompilationError as err:
        # Below ERROR verbosity the context's report of the compiler log is filtered out
        if not logging.getLogger(ExecutionContext.__module__).isEnabledFor(logging.ERROR):
            logger.critical("Kernel compilation log:\n-----\n%s\n-----", err.log.rstrip("\0"))
        logger.critical("%s", err)
    except KernelRunnerError as err:
        logger.critical("%s", err)
    return 1
