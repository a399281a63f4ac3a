from app.moc import create_app

app = create_app()
