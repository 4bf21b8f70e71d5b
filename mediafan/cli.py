import logging
import sys
from pathlib import Path

import click

from mediafan.configs import settings
from mediafan.const import PRESET_TASKS
from mediafan.errors import MediafanError
from mediafan.remuxer.codec_utils import init_codec_library
from mediafan.remuxer.transcode_pipeline import TranscodePipeline
from mediafan.schemas import Hook, Task

logger = logging.getLogger(__name__)


@click.command()
@click.argument("source", metavar="INPUT")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory the preset outputs are written to.",
)
@click.option("--hook", "hooks", multiple=True, help="URL notified with a POST once every output is written.")
@click.option(
    "--idle-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help=f"Seconds an encoder waits for a frame before failing (default {settings.worker_idle_timeout:g}).",
)
@click.option("--log-level", default=None, help=f"Logging level (default {settings.log_level}).")
@click.version_option(package_name="mediafan")
def main(source: str, output_dir: Path, hooks: tuple[str, ...], idle_timeout: float | None, log_level: str | None):
    """Decode INPUT (path or URL) once and encode it into every preset output."""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    init_codec_library()

    try:
        with TranscodePipeline.open(source, output_dir=output_dir, idle_timeout=idle_timeout) as pipeline:
            for preset in PRESET_TASKS:
                pipeline.add_task(Task(**preset))
            for url in hooks:
                pipeline.add_hook(Hook(url=url))
            result = pipeline.run()
    except MediafanError as e:
        logger.debug("Run failed", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for worker in result.workers:
        click.echo(f"{worker.task.output_file}: {worker.frames_written} frames")


if __name__ == "__main__":
    main()
