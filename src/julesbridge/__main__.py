from julesbridge.main import cli

cli()
