import logging

from .errors import PersistenceError

logger = logging.getLogger(__name__)


def sweep_once(app):
    """Delete every message past its expiry. Returns how many went."""
    with app.app_context():
        store = app.extensions['btween'].store
        deleted = store.purge_expired()
    if deleted:
        logger.info("retention sweep removed %d expired messages", deleted)
    return deleted


def _sweep_forever(app, socketio, interval):
    while True:
        socketio.sleep(interval)
        try:
            sweep_once(app)
        except PersistenceError:
            # already logged by the store; try again next round
            continue
        except Exception:
            logger.exception("retention sweep failed, retrying in %ss", interval)


def start_retention_sweep(app, socketio):
    """Run sweep_once every RETENTION_SWEEP_INTERVAL seconds in a
    background task. An interval of 0 disables the sweep."""
    interval = app.config['RETENTION_SWEEP_INTERVAL']
    if not interval:
        logger.info("retention sweep disabled")
        return None
    logger.info("retention sweep every %ss", interval)
    return socketio.start_background_task(_sweep_forever, app, socketio, interval)
