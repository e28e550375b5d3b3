import logging
import os

from btween import create_app, socketio

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()

if __name__ == '__main__':
    cert_path = os.environ.get('BTWEEN_CERT_FILE')
    key_path = os.environ.get('BTWEEN_KEY_FILE')
    ssl_args = {'certfile': cert_path, 'keyfile': key_path} if cert_path and key_path else {}

    socketio.run(
        app,
        host=os.environ.get('BTWEEN_HOST', '0.0.0.0'),
        port=int(os.environ.get('BTWEEN_PORT', 3000)),
        **ssl_args
    )
