"""Command line tools for editing derived sensors and reading derived series.

The Typer application is ``cli.app.app``; it is not re-exported
here so that patching ``cli.app.ApiClient`` targets the module.
"""

__all__: list[str] = []
