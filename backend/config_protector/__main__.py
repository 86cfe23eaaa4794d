"""Allow ``python -m config_protector``."""

from config_protector.cli.main import app

app(prog_name="ccp")
