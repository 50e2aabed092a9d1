"""Publishing core: credential guard, publish executor, thread sequencer."""
