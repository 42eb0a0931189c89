from termagent.cli import run

run()
