from app.mailroom import create_app

app = create_app()
