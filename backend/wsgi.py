# backend/wsgi.py
from tpvcore import create_app

app = create_app()
