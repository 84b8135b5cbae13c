from impactlens import create_app
from config import get_config
from apscheduler.schedulers.background import BackgroundScheduler
from impactlens.tasks.sweeper import OrphanSweeperTask
import atexit
import logging

config = get_config()

app = create_app(config)

# Scheduler setup
scheduler = BackgroundScheduler()


def scheduled_orphan_sweep():
    with app.app_context():
        db = app.extensions['impactlens']['db']
        try:
            OrphanSweeperTask(db, grace_minutes=app.config['ORPHAN_GRACE_MINUTES']).run_sweeper()
        except Exception as e:
            logging.getLogger(__name__).error(f"Scheduled orphan sweep failed: {e}", exc_info=True)


scheduler.add_job(
    scheduled_orphan_sweep, 'interval', hours=app.config['SWEEP_INTERVAL_HOURS'], id='orphan_sweep'
)
scheduler.start()
atexit.register(lambda: scheduler.shutdown())

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000)
