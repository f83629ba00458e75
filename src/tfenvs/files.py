from contextlib import (
    contextmanager,
)
import os
import os.path
import tempfile


@contextmanager
def write_file_atomically(path, mode=0o644):
    """
    Yield a text file object that, once the context is exited without an
    exception, replaces the file at the given path in a single step. Readers
    never observe a partially written file.

    >>> from pathlib import Path
    >>> with tempfile.TemporaryDirectory() as d:
    ...     p = Path(d) / 'dev.tfvars'
    ...     with write_file_atomically(p) as f:
    ...         _ = f.write('instance_count = 1\\n')
    ...     p.read_text()
    'instance_count = 1\\n'

    >>> with tempfile.TemporaryDirectory() as d:
    ...     p = Path(d) / 'dev.tfvars'
    ...     with write_file_atomically(p) as f:
    ...         raise ValueError()
    Traceback (most recent call last):
    ...
    ValueError
    """
    dir_path, file_name = os.path.split(path)
    fd, temp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, 'w') as f:
            yield f
        os.chmod(temp_path, mode)
        os.rename(temp_path, path)
    except BaseException:
        os.unlink(temp_path)
        raise
