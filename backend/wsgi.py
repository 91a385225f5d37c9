from materials import create_app

app = create_app()
