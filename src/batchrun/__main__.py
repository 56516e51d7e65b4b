from batchrun.cli import cli

cli(prog_name="batchrun")
