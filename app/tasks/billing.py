from app.celery_app import celery_app
from app.db import SessionLocal
from app.services import entitlement_sync as entitlement_sync_service
from app.services import subscriptions as subscription_service
from app.services.events import build_dispatcher


@celery_app.task(name="app.tasks.billing.expire_lapsed_subscriptions")
def expire_lapsed_subscriptions(dry_run: bool = False):
    session = SessionLocal()
    try:
        result = subscription_service.expire_lapsed_subscriptions(
            session, build_dispatcher(), dry_run=dry_run
        )
        return {**result, "run_at": result["run_at"].isoformat()}
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.billing.sync_subscription_entitlements")
def sync_subscription_entitlements():
    session = SessionLocal()
    try:
        result = entitlement_sync_service.sync_all(session, build_dispatcher())
        return {**result, "run_at": result["run_at"].isoformat()}
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
