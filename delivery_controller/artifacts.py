class ArtifactCatalog:
    """Interface to the artifact collaborator; versions are opaque strings"""

    def is_deployable(self, version):
        raise NotImplementedError


class StaticArtifactCatalog(ArtifactCatalog):
    def __init__(self, purged=None):
        self.purged = set(purged or ())

    def purge(self, version):
        self.purged.add(version)

    def is_deployable(self, version):
        return version not in self.purged
