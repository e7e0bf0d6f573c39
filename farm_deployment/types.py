from pathlib import Path

import click

from farm_deployment.runlog import RunLog


class RunLogFile(click.ParamType):
    """Loads a run log written by a previous (failed) deployment run."""

    name = "run_log"

    def convert(self, value, param, ctx):
        if isinstance(value, RunLog):
            return value
        filepath = Path(value)
        if not filepath.exists():
            self.fail(f"No run log found at {filepath}", param, ctx)
        try:
            return RunLog.load(filepath)
        except (ValueError, KeyError) as e:
            self.fail(f"{filepath} is not a valid run log: {e}", param, ctx)
