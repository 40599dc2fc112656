from chicon.cli.app import app

app()
