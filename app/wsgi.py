from app.doccontrol import create_app

app = create_app()
