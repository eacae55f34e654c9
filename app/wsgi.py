from app.replay import create_app

app = create_app()
