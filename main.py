from sameday import create_app

app = create_app()
