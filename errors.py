class IndexerError(Exception):
    pass


class ConfigurationError(IndexerError):
    """Missing or invalid settings. Only ever raised at startup."""


class TransientUnavailable(IndexerError):
    """Every configured RPC endpoint failed for one call."""


class StorageUnavailable(IndexerError):
    """The checkpoint store could not be reached or refused the write."""


class DecodeError(IndexerError):
    """A single log could not be turned into a checkpoint record."""

    def __init__(self, message, log=None):
        super().__init__(message)
        self.log = log


class Conflict(IndexerError):
    """A stored checkpoint disagrees with a newly observed one."""

    def __init__(self, stored, observed):
        super().__init__(
            f"{observed.network}: L2 block {observed.l2_block_number} stored with root "
            f"{stored.output_root} at L1 block {stored.l1_block_number}, observed "
            f"{observed.output_root} at L1 block {observed.l1_block_number}"
        )
        self.stored = stored
        self.observed = observed


class ReorgDetected(IndexerError):
    """A reorg deeper than the configured rewind bound."""

    def __init__(self, network, fork_block, depth):
        super().__init__(f"{network}: reorg at L1 block {fork_block} would rewind {depth} blocks")
        self.network = network
        self.fork_block = fork_block
        self.depth = depth
