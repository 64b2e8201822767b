# app.py
# WSGI entrypoint: `flask --app app run`, or point gunicorn at app:app
import logging, os

from core import create_app

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()

# Local dev entrypoint
if __name__ == "__main__":
    app.run(debug=True)
