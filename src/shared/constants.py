from enum import Enum

# Предельная широта Web Mercator (градусы)
MERCATOR_MAX_LAT_DEG = 85.051129

# Охват мира по долготе (градусы)
WORLD_LNG_SPAN_DEG = 360.0
WORLD_LNG_HALF_SPAN_DEG = 180.0

# Границы по умолчанию, если по сохранённым тайлам их не вывести
WORLD_BOUNDS = (
    -WORLD_LNG_HALF_SPAN_DEG,
    -MERCATOR_MAX_LAT_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    MERCATOR_MAX_LAT_DEG,
)

# Поддерживаемый диапазон уровней приближения
MIN_ZOOM = 0
MAX_ZOOM = 22

# Значения по умолчанию для метаданных пустого хранилища
DEFAULT_MINZOOM = MIN_ZOOM
DEFAULT_MAXZOOM = MAX_ZOOM
DEFAULT_TILE_FORMAT = 'png'

# Метаданные по умолчанию, если в хранилище их нет
DEFAULT_METADATA_NAME = 'Unknown'
DEFAULT_METADATA_VERSION = '1.0.0'
DEFAULT_METADATA_TYPE = 'overlay'

# Расширения файлов тайлов, допустимые для XYZ-хранилища
TILE_FORMATS = ('gif', 'png', 'jpg', 'jpeg', 'webp', 'pbf')

# --- HTTP
# Таймаут одного запроса (секунды)
HTTP_TIMEOUT_DEFAULT = 60.0
# Число попыток на тайл
HTTP_RETRIES_DEFAULT = 5
# Базовая пауза перед второй попыткой (секунды)
HTTP_BACKOFF_BASE_S = 0.5
# Множитель экспоненциальной паузы между попытками
HTTP_BACKOFF_FACTOR = 1.6
# Верхняя граница одной паузы (секунды)
HTTP_BACKOFF_MAX_S = 30.0
# User-Agent для запросов к источнику
HTTP_USER_AGENT = 'tile-seeder'

HTTP_OK = 200
HTTP_NO_CONTENT = 204
HTTP_NOT_FOUND = 404

# --- Параллельность
# Число тайлов, загружаемых одновременно в задании заполнения
DOWNLOAD_CONCURRENCY = 8
# Число тайлов, обрабатываемых одновременно при очистке
CLEANUP_CONCURRENCY = 16

# --- Блокировки
# Сколько писатель ждёт ресурс, прежде чем сдаться (секунды)
LOCK_TIMEOUT_S = 300.0
# Пауза между повторами при занятой базе SQLite (секунды)
SQLITE_BUSY_RETRY_S = 0.05
# Рост паузы между повторами (при 1.0 пауза постоянная)
SQLITE_BUSY_BACKOFF_FACTOR = 1.0
# Максимальная пауза между повторами (секунды)
SQLITE_BUSY_RETRY_MAX_S = 1.0
# busy_timeout SQLite для каждого соединения (миллисекунды)
SQLITE_BUSY_TIMEOUT_MS = 100
# Интервал опроса, пока существует файл блокировки (секунды)
LOCK_FILE_POLL_S = 0.1
# Суффикс файлов-маркеров блокировки
LOCK_FILE_SUFFIX = '.lock'
# Суффикс временных файлов для атомарной замены
TMP_FILE_SUFFIX = '.tmp'

# --- Структура хранилища внутри каталога данных
CACHES_DIR_NAME = 'caches'
MBTILES_DIR_NAME = 'mbtiles'
XYZ_DIR_NAME = 'xyzs'
STYLES_DIR_NAME = 'styles'
GEOJSONS_DIR_NAME = 'geojsons'
XYZ_MD5_DB_NAME = 'md5.sqlite'
XYZ_METADATA_FILE_NAME = 'metadata.json'

# Файлы описания заданий в порядке поиска
SEED_FILE_NAMES = ('seed.toml', 'seed.json')
CLEANUP_FILE_NAMES = ('cleanup.toml', 'cleanup.json')

# Файл с состоянием последнего задания
TASK_STATUS_FILE_NAME = 'task-status.json'

# --- Запуск заданий
# Время между запросом отмены и принудительным завершением процесса (секунды)
JOB_CANCEL_GRACE_S = 5.0
# Интервал опроса очереди рабочего процесса (секунды)
JOB_QUEUE_POLL_S = 0.1
# Минимальный интервал записи файла состояния при обновлении прогресса (секунды)
JOB_STATUS_FLUSH_S = 1.0
# Ожидание потока чтения после завершения процесса (секунды)
JOB_READER_JOIN_S = 2.0

# --- Логирование
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = 'tile_seeder.log'

# Писать прогресс в лог каждые N обработанных тайлов
PROGRESS_LOG_EVERY = 1000

MS_PER_SECOND = 1000
MS_PER_DAY = 24 * 60 * 60 * MS_PER_SECOND


class StorageType(str, Enum):
    """Тип хранилища тайлов."""

    MBTILES = 'mbtiles'
    XYZ = 'xyz'


class TileScheme(str, Enum):
    """Нумерация строк тайлов в URL источника."""

    XYZ = 'xyz'
    TMS = 'tms'


class JobState(str, Enum):
    """Состояние фонового задания."""

    IDLE = 'idle'
    RUNNING = 'running'
    DONE = 'done'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
