"""
Application entry point
Starts the face unlock Flask service
"""
import atexit
import os

from dotenv import load_dotenv

# Load .env before the settings module reads the environment
load_dotenv()

from unlock_app import create_app

app = create_app()
atexit.register(app.extensions['unlock_service'].shutdown)

if __name__ == '__main__':
    host = os.getenv('FLASK_HOST', '0.0.0.0')
    port = int(os.getenv('FLASK_PORT', 5000))
    debug = os.getenv('FLASK_DEBUG', 'False').lower() in ('true', '1', 'yes')

    app.logger.info(f"Starting face unlock service on {host}:{port}")
    app.logger.info(f"Debug mode: {debug}")

    # The reloader would spawn a second process competing for the camera
    app.run(
        host=host,
        port=port,
        debug=debug,
        threaded=True,
        use_reloader=False,
    )
