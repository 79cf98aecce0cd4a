"""Command-line entry points."""

from __future__ import annotations

import logging
from typing import Optional

import typer

from .config import Settings
from .logs import setup_logging

app = typer.Typer(
    name="gifcast",
    help="Record a window with a visible cursor and turn it into a looping GIF.",
    no_args_is_help=True,
)

log = logging.getLogger(__name__)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to listen on (default $PORT or 3003)."),
    data_dir: Optional[str] = typer.Option(None, help="Where uploads and GIFs are kept."),
):
    """Run the transcode job service."""
    from pathlib import Path

    from .server import serve as run_server

    settings = Settings.from_env()
    if port:
        settings.port = port
    if data_dir:
        settings.data_dir = Path(data_dir)
    setup_logging(settings.log_level, settings.log_file or None)
    run_server(settings)


@app.command()
def record(
    fps: int = typer.Option(10, help="GIF frame rate."),
    width: int = typer.Option(720, help="GIF width in pixels."),
    quality: str = typer.Option("medium", help="low, medium or high."),
    api_url: Optional[str] = typer.Option(None, help="Job service URL."),
    delay: float = typer.Option(3.0, help="Seconds to switch to the target window after Enter."),
):
    """Record the focused window. Enter starts and stops; q quits."""
    import time

    from .client import JobClient
    from .coordinator import Coordinator
    from .models import RecordingOptions, SessionState
    from .targets import default_provider

    settings = Settings.from_env()
    if api_url:
        settings.api_url = api_url.rstrip("/")
    setup_logging(settings.log_level, settings.log_file or None)
    options = RecordingOptions(fps=fps, width=width, quality=quality)

    def show(event):
        parts = [event.status]
        if event.progress is not None:
            parts.append(f"{event.progress}%")
        if event.message:
            parts.append(event.message)
        if event.filepath:
            parts.append(event.filepath)
        typer.echo(" · ".join(parts))

    client = JobClient(settings.api_url)
    coordinator = Coordinator(default_provider(), client, monitor=show, settings=settings).start()
    typer.echo("Focus the window to record, then press Enter here (q to quit).")
    try:
        while True:
            line = input()
            if line.strip().lower() == "q":
                break
            if coordinator.state is SessionState.IDLE and delay > 0:
                typer.echo(f"Recording the focused window in {delay:g}s...")
                time.sleep(delay)
            try:
                coordinator.request_start(options).result()
            except Exception as e:
                typer.echo(f"error · {e}", err=True)
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        coordinator.close(timeout=10)
        client.close()


@app.command("native-host")
def native_host():
    """Speak the framed native-messaging protocol on stdin/stdout."""
    from .native import host

    settings = Settings.from_env()
    # stdout carries protocol frames, so logs go to a file only
    settings.output_dir.mkdir(parents=True, exist_ok=True)
    logfile = settings.log_file or str(settings.output_dir / "gifcast.log")
    setup_logging(settings.log_level, logfile)
    host.run(settings=settings)


@app.command()
def relay(
    left: int = typer.Option(0, help="Target origin x."),
    top: int = typer.Option(0, help="Target origin y."),
):
    """Print pointer samples as JSON lines until STOP is read from stdin."""
    from .cursor import relay_to_stream

    relay_to_stream(origin=(left, top))


def main():
    app()


if __name__ == "__main__":
    main()
