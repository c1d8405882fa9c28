from pkgforge import cli

cli.cli()
