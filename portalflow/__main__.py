from portalflow.cli import app

app()
