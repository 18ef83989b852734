import queue
import logging
logger = logging.getLogger("gemflash")

from gemflash.utils import to_mib

class EventSink():
	"""
	Receives the events of one flashing run. Exactly one of success() and
	error() is called, and it is always the last call of the run.
	"""

	def preparation_status(self, msg: str):
		pass

	def progress(self, percentage: int, msg: str):
		pass

	def download_progress(self, received: int, total: int):
		pass

	def success(self):
		pass

	def error(self, msg: str):
		pass

class LogEventSink(EventSink):
	def preparation_status(self, msg: str):
		logger.info(msg)

	def progress(self, percentage: int, msg: str):
		logger.info(f"[{percentage:3d}%] {msg}")

	def download_progress(self, received: int, total: int):
		logger.debug(f"downloaded {to_mib(received)} MB / {to_mib(total)} MB")

	def success(self):
		logger.info("Flashing done")

	def error(self, msg: str):
		logger.error(msg)

class QueueEventSink(EventSink):
	"""
	Pushes (event name, args) tuples on a queue, so that a UI thread can
	poll them instead of being called from the flashing thread.
	"""

	def __init__(self, event_queue: queue.Queue = None):
		self.queue = event_queue if event_queue is not None else queue.Queue()

	def preparation_status(self, msg: str):
		self.queue.put(("preparation_status", (msg,)))

	def progress(self, percentage: int, msg: str):
		self.queue.put(("progress", (percentage, msg)))

	def download_progress(self, received: int, total: int):
		self.queue.put(("download_progress", (received, total)))

	def success(self):
		self.queue.put(("success", ()))

	def error(self, msg: str):
		self.queue.put(("error", (msg,)))

	def drain(self) -> list:
		events = []
		while True:
			try:
				events.append(self.queue.get_nowait())
			except queue.Empty:
				return events

class ProgressReporter():
	"""
	Front end to an EventSink which keeps the reported percentage
	monotonic and guards the terminal event.
	"""

	def __init__(self, sink: EventSink):
		self.sink = sink
		self.percentage = 0
		self.finished = False

	def status(self, msg: str):
		if not self.finished:
			self.sink.preparation_status(msg)

	def update(self, percentage: int, msg: str):
		if self.finished:
			return
		percentage = max(self.percentage, min(100, int(percentage)))
		self.percentage = percentage
		self.sink.progress(percentage, msg)

	def download(self, received: int, total: int):
		if not self.finished:
			self.sink.download_progress(received, total)

	def success(self):
		if self.finished:
			return
		self.finished = True
		self.sink.success()

	def error(self, msg: str):
		if self.finished:
			return
		self.finished = True
		self.sink.error(msg)
