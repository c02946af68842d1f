"""
Model Training DAG

Weekly retraining of the anomaly and predictive engines on the analytic
store. New artifacts are registered and promoted; consumers pick them up on
their next load.

Schedule: Weekly on Sunday at 2:00 AM
"""
from datetime import datetime, timedelta

from airflow import DAG
from airflow.exceptions import AirflowException
from airflow.operators.python import PythonOperator

from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

MIN_TRAINING_ROWS = 50

default_args = {
    'owner': 'supplytrace',
    'depends_on_past': False,
    'email_on_failure': False,
    'email_on_retry': False,
    'retries': 1,
    'retry_delay': timedelta(minutes=15),
    'execution_timeout': timedelta(hours=2),
}


def check_training_data(**context):
    """
    Count stored rows per engine and push the counts to XCom.

    Raises:
        AirflowException: No engine has enough rows
    """
    from src.supplytrace.db.repository import AnalyticRowRepository
    from src.supplytrace.db.session import get_db_session
    from src.supplytrace.ml.training.train_engines import TRAINING_TABLES

    counts = {}
    with get_db_session() as session:
        for engine_name, table in TRAINING_TABLES.items():
            counts[engine_name] = AnalyticRowRepository(table).count(session)

    logger.info("training_data_check_completed", counts=counts, minimum_required=MIN_TRAINING_ROWS)
    context['task_instance'].xcom_push(key='training_counts', value=counts)

    if all(count < MIN_TRAINING_ROWS for count in counts.values()):
        raise AirflowException(f"Insufficient training data: {counts}")
    return counts


def _train(engine_name: str, context) -> dict:
    from src.supplytrace.ml.training.train_engines import train_engines

    counts = context['task_instance'].xcom_pull(task_ids='check_training_data', key='training_counts') or {}
    if counts.get(engine_name, 0) < MIN_TRAINING_ROWS:
        logger.warning("engine_training_skipped", engine=engine_name, rows=counts.get(engine_name, 0))
        return {}

    artifact = train_engines(engines=[engine_name])[engine_name]
    return {'version': artifact.version, 'metrics': artifact.metrics}


def train_anomaly_engine(**context):
    return _train('anomaly', context)


def train_predictive_engine(**context):
    return _train('predictive', context)


def validate_active_models(**context):
    """Confirm each engine has a loadable active artifact."""
    from src.supplytrace.errors import ModelNotFittedError
    from src.supplytrace.ml.training.train_engines import ENGINE_NAMES, load_active_artifact

    versions = {}
    for engine_name in ENGINE_NAMES:
        try:
            versions[engine_name] = load_active_artifact(engine_name).version
        except (ModelNotFittedError, FileNotFoundError) as e:
            logger.warning("active_model_unavailable", engine=engine_name, error=str(e))
            versions[engine_name] = None

    logger.info("active_models_validated", versions=versions)
    return versions


with DAG(
    'model_training',
    default_args=default_args,
    description='Weekly retraining of the anomaly and predictive engines',
    schedule='0 2 * * 0',  # 2:00 AM on Sundays
    start_date=datetime(2024, 1, 1),
    catchup=False,
    tags=['ml', 'training', 'weekly'],
) as dag:

    check_data_task = PythonOperator(
        task_id='check_training_data',
        python_callable=check_training_data,
    )

    train_anomaly_task = PythonOperator(
        task_id='train_anomaly_engine',
        python_callable=train_anomaly_engine,
    )

    train_predictive_task = PythonOperator(
        task_id='train_predictive_engine',
        python_callable=train_predictive_engine,
    )

    validate_task = PythonOperator(
        task_id='validate_active_models',
        python_callable=validate_active_models,
    )

    check_data_task >> [train_anomaly_task, train_predictive_task] >> validate_task
