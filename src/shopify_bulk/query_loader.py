import re
from pathlib import Path

FRAGMENT_SPREAD = re.compile(r"\.\.\.([A-Za-z_]\w*)")


class QueryLoader:
    """
    Loads GraphQL documents from external .graphql files
    """

    def __init__(self, queries_dir: str | None = None):
        """
        Initialize query loader

        Args:
            queries_dir: Path to queries directory. If None, uses default location.
        """
        if queries_dir is None:
            current_dir = Path(__file__).parent
            self.queries_dir = current_dir / "queries"
        else:
            self.queries_dir = Path(queries_dir)
        self._queries_cache: dict[str, str] = {}

    def load_query(self, query_name: str, file_name: str | None = None) -> str:
        """
        Load a GraphQL operation from file, with the fragments it spreads appended

        Args:
            query_name: Name of the query or mutation
            file_name: File holding the operation (without .graphql extension),
                defaults to query_name

        Returns:
            GraphQL document string

        Raises:
            FileNotFoundError: If query file doesn't exist
            ValueError: If query not found in file
        """
        if query_name in self._queries_cache:
            return self._queries_cache[query_name]

        content = self._read(self.queries_dir / f"{file_name or query_name}.graphql")
        query = self._extract_operation(content, query_name)

        fragments = []
        for fragment_name in dict.fromkeys(FRAGMENT_SPREAD.findall(query)):
            fragment_file = self.queries_dir / "fragments" / f"{fragment_name}.graphql"
            fragments.append(self._read(fragment_file).strip())

        document = "\n\n".join([query, *fragments])
        self._queries_cache[query_name] = document

        return document

    @staticmethod
    def _read(path: Path) -> str:
        if not path.exists():
            raise FileNotFoundError(f"Query file not found: {path}")

        with open(path, encoding="utf-8") as f:
            return f.read()

    def _extract_operation(self, content: str, query_name: str) -> str:
        """
        Extract a specific query or mutation from GraphQL file content

        Args:
            content: Full file content
            query_name: Name of the operation to extract

        Returns:
            Extracted operation string

        Raises:
            ValueError: If operation not found in content
        """
        header = re.compile(rf"^\s*(query|mutation)\s+{re.escape(query_name)}\b")
        lines = content.split("\n")
        query_lines = []
        in_query = False
        brace_count = 0

        for line in lines:
            if line.strip().startswith("#"):
                continue

            if not in_query and header.match(line):
                in_query = True

            if in_query:
                query_lines.append(line)
                brace_count += line.count("{")
                brace_count -= line.count("}")

                # Multi-line variable lists open no brace before the selection set
                if brace_count == 0 and "}" in line:
                    break

        if not query_lines:
            raise ValueError(f"Query '{query_name}' not found in file")

        return "\n".join(query_lines).strip()
