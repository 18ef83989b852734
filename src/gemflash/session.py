import threading
import logging
logger = logging.getLogger("gemflash")

from gemflash.config import FlashConfig
from gemflash.events import EventSink
from gemflash.image import ImageRequest
from gemflash.sequencer import FlashSequencer, RunOutcome

class FlashSession():
	"""
	Runs flashing on a dedicated thread so that network, disk and USB
	waits never block the caller. A session runs at most one sequencer
	at a time.
	"""

	def __init__(self, config: FlashConfig, events: EventSink, transfer_factory=None, acquirer=None):
		self.config = config
		self.events = events
		self.transfer_factory = transfer_factory
		self.acquirer = acquirer
		self.thread = None
		self.cancel_event = threading.Event()
		self.outcome = None
		self.lock = threading.Lock()

	def is_running(self) -> bool:
		return self.thread is not None and self.thread.is_alive()

	def start(self, request: ImageRequest) -> bool:
		with self.lock:
			if self.is_running():
				logger.warning("A flashing run is already in progress, not starting another one")
				return False

			self.cancel_event = threading.Event()
			self.outcome = None
			sequencer = FlashSequencer(self.config, request, self.events, self.transfer_factory, self.acquirer, self.cancel_event)
			self.thread = threading.Thread(target=self.run, args=(sequencer,), name="gemflash-run", daemon=True)
			self.thread.start()

		return True

	def run(self, sequencer: FlashSequencer):
		try:
			self.outcome = sequencer.run()
		except Exception as e:
			logger.exception("Caught exception from flashing thread")
			self.outcome = sequencer.fail(f"Unexpected error: {e}")

	def cancel(self):
		# honoured at the next suspension point of the running sequencer
		self.cancel_event.set()

	def join(self, timeout: float = None) -> RunOutcome:
		if self.thread is not None:
			self.thread.join(timeout)
		return self.outcome
