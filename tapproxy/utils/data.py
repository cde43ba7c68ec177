import importlib
import inspect
import os.path


class Data:
    """
    Locate files shipped next to a module: templates, static assets, test data.
    """

    def __init__(self, name: str):
        self.name = name
        m = importlib.import_module(name)
        f = inspect.getsourcefile(m)
        assert f is not None
        self.dirname = os.path.abspath(os.path.dirname(f))

    def push(self, subpath: str) -> "Data":
        """
        Change the data object to a path relative to the module.
        """
        ret = Data(self.name)
        ret.dirname = os.path.normpath(os.path.join(self.dirname, subpath))
        return ret

    def path(self, path: str) -> str:
        """
        Returns a path to the package data housed at 'path' under this
        module. Path can be a path to a file, or to a directory.

        This function will raise ValueError if the path does not exist.
        """
        fullpath = os.path.normpath(os.path.join(self.dirname, path))
        if not os.path.exists(fullpath):
            raise ValueError(f"dataPath: {fullpath} does not exist.")
        return fullpath


pkg_data = Data(__name__).push("..")
