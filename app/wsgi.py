from app.modhub import create_app

app = create_app()
