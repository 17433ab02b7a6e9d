import logging
import queue
from logging.handlers import QueueHandler, QueueListener

from opentelemetry import metrics, trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.system_metrics import SystemMetricsInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry._logs import set_logger_provider


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class OTELManager:
    """
    OpenTelemetry 설정 (tracing, metrics, logging)

    enabled=False 이면 콘솔 로깅만 설정하고 API의 no-op tracer/meter를 쓴다.
    """

    def __init__(
        self,
        service_name: str = "room-sync-service",
        otlp_grpc_endpoint: str = "otel-collector:4317",
        enabled: bool = True,
        log_level: int = logging.INFO,
    ):
        self.service_name = service_name
        self.otlp_grpc_endpoint = otlp_grpc_endpoint
        self.enabled = enabled
        self.log_level = log_level

        self.logger_provider: LoggerProvider | None = None
        self.queue_listener: QueueListener | None = None
        self._instrumentors = []

        if enabled:
            self.resource = Resource(attributes={"service.name": self.service_name})
            self._init_trace()
            self._init_metrics()
        self._init_logging()
        if enabled:
            self._init_instrumentations()

        self.tracer = trace.get_tracer(self.service_name)
        self.meter = metrics.get_meter(self.service_name)
        self._init_app_metrics()

        logger.info(f"OTEL initialized (enabled={enabled})")

    def _init_trace(self) -> None:
        tracer_provider = TracerProvider(resource=self.resource)
        tracer_provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=self.otlp_grpc_endpoint, insecure=True)
            )
        )
        trace.set_tracer_provider(tracer_provider)
        set_global_textmap(TraceContextTextMapPropagator())

    def _init_logging(self) -> None:
        handlers: list[logging.Handler] = []

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(console_handler)

        if self.enabled:
            self.logger_provider = LoggerProvider(resource=self.resource)
            set_logger_provider(self.logger_provider)
            self.logger_provider.add_log_record_processor(
                BatchLogRecordProcessor(
                    OTLPLogExporter(endpoint=self.otlp_grpc_endpoint, insecure=True)
                )
            )
            handlers.append(
                LoggingHandler(
                    logger_provider=self.logger_provider, level=self.log_level
                )
            )

        # 큐 핸들러
        log_queue = queue.Queue(maxsize=10_000)
        self.queue_listener = QueueListener(
            log_queue, *handlers, respect_handler_level=True
        )
        self.queue_listener.start()

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        root_logger.setLevel(self.log_level)
        root_logger.addHandler(QueueHandler(log_queue))

    def _init_metrics(self) -> None:
        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=self.otlp_grpc_endpoint, insecure=True),
            export_interval_millis=10_000,
        )
        meter_provider = MeterProvider(
            resource=self.resource, metric_readers=[metric_reader]
        )
        metrics.set_meter_provider(meter_provider)

    def _init_app_metrics(self) -> None:
        self.active_sessions_counter = self.meter.create_up_down_counter(
            "room_sync.active_sessions", description="Live room sessions"
        )
        self.active_connections_counter = self.meter.create_up_down_counter(
            "room_sync.active_connections", description="Open websocket connections"
        )
        self.messages_sent_counter = self.meter.create_counter(
            "room_sync.messages_sent", description="Acknowledged message writes"
        )
        self.typing_writes_counter = self.meter.create_counter(
            "room_sync.typing_writes", description="Typing start/stop writes"
        )
        self.dropped_events_counter = self.meter.create_counter(
            "room_sync.dropped_events", description="Malformed change events dropped"
        )

    def _init_instrumentations(self) -> None:
        """시스템, Redis, 로깅(trace id 연동) 계측"""
        logging_instrumentor = LoggingInstrumentor()
        logging_instrumentor.instrument(
            set_logging_format=False, log_level=self.log_level
        )

        self._instrumentors = [
            logging_instrumentor,
            SystemMetricsInstrumentor(),
            RedisInstrumentor(),
        ]
        for instrumentor in self._instrumentors[1:]:
            instrumentor.instrument()

    async def stop(self) -> None:
        for instrumentor in self._instrumentors:
            instrumentor.uninstrument()

        if self.enabled:
            self.logger_provider.force_flush(timeout_millis=30_000)
            trace.get_tracer_provider().force_flush(timeout_millis=30_000)
            metrics.get_meter_provider().force_flush(timeout_millis=30_000)

            self.logger_provider.shutdown()
            trace.get_tracer_provider().shutdown()
            metrics.get_meter_provider().shutdown()

        logger.info("OTEL stopped")

        if self.queue_listener:
            self.queue_listener.stop()
