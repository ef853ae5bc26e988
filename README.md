# flagrelay

Building blocks for a feature flag daemon. The package has four parts.

- **Telemetry.**
  - `flagrelay.attributes` builds `Attribute` key/value pairs for feature flags that follow the semantic conventions: `semconv_feature_flag_attributes`, `feature_flag_reason` and `exception_type`.
  - `flagrelay.metrics` provides `MetricsRecorder` and `NoopMetricsRecorder`. A `MetricsRecorder` keeps HTTP request durations and response sizes as histograms. It keeps in-flight requests as an up/down counter, and impressions and evaluation reasons as counters. A `NoopMetricsRecorder` drops every measurement and only counts the calls it receives.
  - `new_otel_recorder(reader, resource, service_name)` connects a recorder to a `MetricsReader`. `MetricsReader.collect()` then returns a snapshot of the current measurements, grouped by resource and scope.
  - `exponential_buckets(start, factor, count)` returns histogram boundaries.
- **Telemetry configuration.** `flagrelay.builder` builds metric readers, recorders, trace providers and resources from a `TelemetryConfig`:
  - `build_metric_reader`
  - `build_metrics_recorder`
  - `build_trace_provider`
  - `build_connect_options`
  - `build_resource_for`

  `register_error_handling(logger)` sends telemetry errors to a logger at debug level.
- **Subscriptions.** `flagrelay.subscriptions.Coordinator` groups the subscribers of one sync target behind a single sync source. It passes every `DataSync` payload and every error on to all of those subscribers. Every five seconds it shuts down targets that have no subscribers left.
- **Runtime.** `flagrelay.runtime.Runtime` connects sync sources, an evaluator and the serving components. It applies incoming flag data, sends `Notification`s about configuration changes and starts resyncs when the evaluator asks for them.

## Installation

```
pip install flagrelay
```

## Command line

```
flagrelay version
```

This prints a line of the form `flagd: <version> (HEAD), built at: unknown`. Run without a command, `flagrelay` prints its help.

Global options:

- `-x` / `--debug` turns on verbose logging. Setting the environment variable `FLAGD_DEBUG` to a true value, such as `1` or `true`, has the same effect.
- `--config PATH` reads settings from a YAML file. Without it, the command reads `~/.agent.yaml` (or `.agent.yml` / `.agent.json`) if one of them exists. The path of the file it used goes to standard error.

## Telemetry

```python
from flagrelay.builder import TelemetryConfig, build_metrics_recorder

recorder = build_metrics_recorder("my-service", "1.0.0", TelemetryConfig())
attrs = recorder.http_attributes("my-service", "/flags", "POST", "200")
recorder.http_request_duration(0.25, attrs)   # seconds or a timedelta
recorder.record_evaluation(None, "STATIC", "on", "my-flag")
```

`record_evaluation` counts an impression only when `err` is `None`. It always counts the reason. For a failed evaluation, the reason count carries the error text and leaves out the flag key.

`TelemetryConfig(metrics_exporter="otel")` must also have a `collector_target`, or `build_metric_reader` raises `ValueError`. The same error is raised for any exporter name other than `"otel"`. `build_trace_provider` returns `None` when no collector target is set.

## Subscriptions

```python
import queue, threading, logging
from flagrelay.subscriptions import Coordinator

with Coordinator(threading.Event(), logging.getLogger("sync"), my_sync_builder) as coord:
    data, errors, cancel = queue.Queue(), queue.Queue(), threading.Event()
    coord.register_subscription(cancel, "file:flags.json", "client-1", data, errors)
    print(data.get().flag_data)
    cancel.set()
```

The caller supplies the sync builder. It must have a `sync_from_uri(uri, logger)` method that returns a source with these methods:

- `init(stop)`
- `sync(stop, sink)`
- `resync(stop, sink)`

`fetch_all_flags(key, target)` behaves in one of two ways:

- If the target already has a running source, it asks that source to resync.
- Otherwise, it registers a short-lived subscription.

It waits up to `fetch_timeout` seconds (five by default) and raises `TimeoutError` if no data arrives in that time. `active_subscriptions()` returns the number of subscribers across all targets.

## What the package does not do

The package has no server and no daemon `start` command. It does not serve flag evaluation, sync or health endpoints over the network, and it includes no sync sources, sync builder or evaluator. `Runtime` and `Coordinator` run only with the objects the caller passes in.

Readers and trace providers stay in process: the package does not send metrics or spans to a collector or to Prometheus.